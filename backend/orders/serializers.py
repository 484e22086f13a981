from rest_framework import serializers

from .models import Order


class OrderSerializer(serializers.ModelSerializer):
    """Serializer for stored orders"""

    class Meta:
        model = Order
        fields = ['id', 'vendor_id', 'driver_id', 'booking_id', 'pickup_location',
                  'drop_location', 'load_type', 'load_weight_kg', 'status',
                  'fare_amount', 'distance_travelled_m', 'created_at', 'updated_at']
        read_only_fields = fields


class OrderCreateSerializer(serializers.Serializer):
    """Serializer for creating orders over HTTP"""
    vendor_id = serializers.CharField(max_length=64)
    pickup_location = serializers.CharField()
    drop_location = serializers.CharField()
    load_type = serializers.CharField(max_length=100)
    load_weight_kg = serializers.DecimalField(
        max_digits=8, decimal_places=2, required=False, allow_null=True, min_value=0
    )
