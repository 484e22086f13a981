from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    path('', views.orders, name='orders'),
    path('<int:order_id>/', views.order_detail, name='order-detail'),
]
