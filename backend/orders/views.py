from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from .models import Order
from .serializers import OrderSerializer, OrderCreateSerializer
from . import store


# ==================== Order APIs ====================

@api_view(['GET', 'POST'])
def orders(request):
    """List orders by status (GET) or create a new pending order (POST)"""
    if request.method == 'POST':
        return _create_order(request)

    order_status = request.query_params.get('status', 'pending')
    if order_status not in dict(Order.STATUS_CHOICES):
        return Response(
            {'success': False, 'error': f'Unknown status: {order_status}'},
            status=status.HTTP_400_BAD_REQUEST
        )

    queryset = store.list_by_status(order_status)
    return Response({
        'success': True,
        'count': queryset.count(),
        'orders': OrderSerializer(queryset, many=True).data,
    })


def _create_order(request):
    serializer = OrderCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(
            {'success': False, 'error': 'Missing required fields', 'details': serializer.errors},
            status=status.HTTP_400_BAD_REQUEST
        )

    order = store.create_record(**serializer.validated_data)
    return Response(
        {
            'success': True,
            'message': 'Order created successfully',
            'order': OrderSerializer(order).data,
        },
        status=status.HTTP_201_CREATED
    )


@api_view(['GET'])
def order_detail(request, order_id):
    """Get a single order by id"""
    order = store.get_by_id(order_id)
    if order is None:
        return Response(
            {'success': False, 'error': 'Order not found'},
            status=status.HTTP_404_NOT_FOUND
        )
    return Response({'success': True, 'order': OrderSerializer(order).data})
