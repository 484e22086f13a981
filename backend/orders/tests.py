from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from asgiref.sync import async_to_sync
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIRequestFactory

from . import store
from .archive import archive_trip_summary
from .models import Order
from .tasks import persist_trip_summary_task
from .views import order_detail, orders


def trip_summary(**overrides):
	summary = {
		'booking_id': 'BK1',
		'vendor_id': 'C1',
		'driver_id': 'D2',
		'pickup_location': 'A',
		'drop_location': 'B',
		'load_type': 'furniture',
		'load_weight_kg': 120.5,
		'fare': 500.0,
		'status': 'delivered',
		'distance_travelled_m': 1234.5,
		'accepted_at': timezone.now().isoformat(),
		'completed_at': timezone.now().isoformat(),
	}
	summary.update(overrides)
	return summary


class OrderStoreTests(TestCase):
	def test_create_record_defaults_to_pending(self):
		order = store.create_record(
			vendor_id='C1',
			pickup_location='Warehouse 4',
			drop_location='Sector 21 market',
			load_type='cement bags',
		)

		self.assertEqual(order.status, 'pending')
		self.assertIsNone(order.booking_id)
		self.assertEqual(list(store.list_by_status()), [order])
		self.assertEqual(list(store.list_by_status('delivered')), [])

	def test_get_by_id_returns_none_for_missing(self):
		self.assertIsNone(store.get_by_id(9999))


class OrderApiTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()

	def test_create_order(self):
		request = self.factory.post('/api/orders/', {
			'vendor_id': 'C1',
			'pickup_location': 'Warehouse 4',
			'drop_location': 'Sector 21 market',
			'load_type': 'cement bags',
			'load_weight_kg': '250.00',
		}, format='json')
		response = orders(request)

		self.assertEqual(response.status_code, 201)
		self.assertTrue(response.data['success'])
		self.assertEqual(response.data['order']['status'], 'pending')
		order = Order.objects.get(id=response.data['order']['id'])
		self.assertEqual(order.load_weight_kg, Decimal('250.00'))

	def test_create_order_missing_fields(self):
		request = self.factory.post('/api/orders/', {'vendor_id': 'C1'}, format='json')
		response = orders(request)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['error'], 'Missing required fields')
		self.assertIn('pickup_location', response.data['details'])
		self.assertEqual(Order.objects.count(), 0)

	def test_list_orders_by_status(self):
		store.create_record('C1', 'A', 'B', 'boxes')
		store.create_record('C2', 'C', 'D', 'boxes', status='delivered')

		response = orders(self.factory.get('/api/orders/'))
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['count'], 1)
		self.assertEqual(response.data['orders'][0]['vendor_id'], 'C1')

		response = orders(self.factory.get('/api/orders/', {'status': 'delivered'}))
		self.assertEqual(response.data['count'], 1)
		self.assertEqual(response.data['orders'][0]['vendor_id'], 'C2')

	def test_list_orders_rejects_unknown_status(self):
		response = orders(self.factory.get('/api/orders/', {'status': 'lost'}))

		self.assertEqual(response.status_code, 400)
		self.assertFalse(response.data['success'])

	def test_order_detail(self):
		order = store.create_record('C1', 'A', 'B', 'boxes')

		response = order_detail(self.factory.get(f'/api/orders/{order.id}/'), order_id=order.id)
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['order']['id'], order.id)

		response = order_detail(self.factory.get('/api/orders/9999/'), order_id=9999)
		self.assertEqual(response.status_code, 404)
		self.assertEqual(response.data['error'], 'Order not found')


class TripPersistenceTests(TestCase):
	def test_task_records_delivered_trip(self):
		order_id = persist_trip_summary_task(trip_summary())

		order = Order.objects.get(id=order_id)
		self.assertEqual(order.booking_id, 'BK1')
		self.assertEqual(order.status, 'delivered')
		self.assertEqual(order.driver_id, 'D2')
		self.assertEqual(order.vendor_id, 'C1')
		self.assertEqual(order.fare_amount, Decimal('500.00'))
		self.assertEqual(order.load_weight_kg, Decimal('120.50'))
		self.assertEqual(order.distance_travelled_m, 1234.5)

	def test_task_is_idempotent_per_booking(self):
		first = persist_trip_summary_task(trip_summary())
		second = persist_trip_summary_task(trip_summary(fare=900.0))

		self.assertEqual(first, second)
		self.assertEqual(Order.objects.filter(booking_id='BK1').count(), 1)
		self.assertEqual(Order.objects.get(id=first).fare_amount, Decimal('500.00'))

	def test_task_handles_missing_optional_fields(self):
		order_id = persist_trip_summary_task(trip_summary(load_weight_kg=None, vendor_id=None))

		order = Order.objects.get(id=order_id)
		self.assertIsNone(order.load_weight_kg)
		self.assertEqual(order.vendor_id, '')

	def test_task_logs_and_returns_none_on_bad_summary(self):
		with self.assertLogs('orders.tasks', level='ERROR'):
			result = persist_trip_summary_task({'booking_id': 'BK9'})

		self.assertIsNone(result)
		self.assertFalse(Order.objects.exists())

	def test_archive_queues_task(self):
		# Tasks run eagerly in development and test settings
		self.assertTrue(async_to_sync(archive_trip_summary)(trip_summary()))

		self.assertTrue(Order.objects.filter(booking_id='BK1', status='delivered').exists())

	def test_archive_failure_is_reported_not_raised(self):
		with patch('orders.archive.persist_trip_summary_task.delay', side_effect=ConnectionError('broker down')):
			with self.assertLogs('orders.archive', level='ERROR'):
				queued = async_to_sync(archive_trip_summary)(trip_summary())

		self.assertFalse(queued)
		self.assertFalse(Order.objects.exists())


class CleanupOldOrdersTests(TestCase):
	def setUp(self):
		old = timezone.now() - timedelta(days=45)
		self.old_delivered = store.create_record('C1', 'A', 'B', 'boxes', status='delivered')
		self.old_pending = store.create_record('C2', 'A', 'B', 'boxes')
		self.recent_delivered = store.create_record('C3', 'A', 'B', 'boxes', status='delivered')
		Order.objects.filter(id__in=[self.old_delivered.id, self.old_pending.id]).update(updated_at=old)

	def test_deletes_only_old_finished_orders(self):
		out = StringIO()
		call_command('cleanup_old_orders', days=30, stdout=out)

		remaining = set(Order.objects.values_list('id', flat=True))
		self.assertEqual(remaining, {self.old_pending.id, self.recent_delivered.id})
		self.assertIn('Deleted 1 finished orders', out.getvalue())

	def test_dry_run_keeps_everything(self):
		out = StringIO()
		call_command('cleanup_old_orders', days=30, dry_run=True, stdout=out)

		self.assertEqual(Order.objects.count(), 3)
		self.assertIn('DRY RUN: Would delete 1', out.getvalue())
