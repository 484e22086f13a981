from django.db import models


class Order(models.Model):
    """Durable delivery order; completed trips land here from the dispatch coordinator."""

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('accepted', 'Accepted'),
        ('in_transit', 'In Transit'),
        ('delivered', 'Delivered'),
        ('cancelled', 'Cancelled'),
    ]
    TERMINAL_STATUSES = ['delivered', 'cancelled']

    # Parties (identities come from the external auth service)
    vendor_id = models.CharField(max_length=64)
    driver_id = models.CharField(max_length=64, null=True, blank=True)

    # Live booking this order was recorded from, if any
    booking_id = models.CharField(max_length=64, unique=True, null=True, blank=True)

    # Route & load
    pickup_location = models.TextField()
    drop_location = models.TextField()
    load_type = models.CharField(max_length=100)
    load_weight_kg = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)

    # Status & fare
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    fare_amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    distance_travelled_m = models.FloatField(null=True, blank=True)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'orders'
        ordering = ['-created_at']

    def __str__(self):
        return f"Order #{self.id} - {self.vendor_id} - {self.status}"
