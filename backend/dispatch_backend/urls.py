from django.contrib import admin
from django.urls import path, include

from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check), # Health check endpoint

    # Durable order store (at /api/orders/)
    path('api/orders/', include('orders.urls')),  # orders.urls have create, list-by-status and detail endpoints
]
