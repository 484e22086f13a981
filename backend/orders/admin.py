"""Tells what to show in the Django admin interface for orders app"""

from django.contrib import admin
from .models import Order


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    """Order admin"""
    list_display = ['id', 'booking_id', 'vendor_id', 'driver_id', 'status', 'fare_amount', 'created_at']
    list_filter = ['status', 'created_at']
    search_fields = ['booking_id', 'vendor_id', 'driver_id', 'pickup_location', 'drop_location']
    readonly_fields = ['created_at', 'updated_at']
    date_hierarchy = 'created_at'
