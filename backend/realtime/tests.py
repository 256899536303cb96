from decimal import Decimal
from unittest.mock import AsyncMock, patch

from asgiref.sync import async_to_sync
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from accounts.models import User
from chamados.models import ServiceRequest
from providers.models import ProviderProfile

from .broadcast import broadcast_request_change, publish_provider_location
from .consumers.request_consumer import RequestConsumer


class SequenceDedupTests(SimpleTestCase):
	def make_consumer(self):
		consumer = RequestConsumer()
		consumer.delivered_sequences = {}
		consumer.delivered_updates = set()
		consumer.send_json = AsyncMock()
		return consumer

	def test_duplicate_and_stale_status_events_are_dropped(self):
		consumer = self.make_consumer()
		event = {'type': 'request_status_changed', 'request_id': 7, 'sequence': 3, 'status': 'accepted'}

		async_to_sync(consumer.request_status_changed)(event)
		async_to_sync(consumer.request_status_changed)(event)
		async_to_sync(consumer.request_status_changed)({**event, 'sequence': 2, 'status': 'searching'})
		async_to_sync(consumer.request_status_changed)({**event, 'sequence': 4, 'status': 'negotiating'})

		statuses = [c.args[0]['status'] for c in consumer.send_json.call_args_list]
		self.assertEqual(statuses, ['accepted', 'negotiating'])

	def test_sequences_are_tracked_per_request(self):
		consumer = self.make_consumer()

		async_to_sync(consumer.request_status_changed)({'request_id': 1, 'sequence': 5, 'status': 'accepted'})
		async_to_sync(consumer.request_status_changed)({'request_id': 2, 'sequence': 1, 'status': 'searching'})

		self.assertEqual(consumer.send_json.await_count, 2)

	def test_request_update_delivered_once(self):
		consumer = self.make_consumer()
		event = {
			'type': 'request_updated',
			'event': 'chat_message',
			'request_id': 1,
			'sequence': 3,
			'message_id': 11,
			'message': 'Chego em 10 minutos',
		}

		async_to_sync(consumer.request_updated)(event)
		async_to_sync(consumer.request_updated)(event)

		consumer.send_json.assert_awaited_once()
		self.assertEqual(consumer.send_json.call_args.args[0]['type'], 'chat_message')


class BroadcastTests(TestCase):
	def setUp(self):
		self.client_user = User.objects.create_user(username='client', password='pass1234', role='client')
		self.provider = User.objects.create_user(username='provider', password='pass1234', role='provider')
		ProviderProfile.objects.create(user=self.provider, is_online=True)
		self.request = ServiceRequest.objects.create(
			client=self.client_user,
			provider=self.provider,
			service_type='tire',
			origin_latitude=Decimal('-23.550500'),
			origin_longitude=Decimal('-46.633300'),
			origin_address='Av. Paulista, 1000',
			status='in_service',
			status_sequence=5,
			updated_at=timezone.now(),
		)

	@patch('realtime.broadcast._group_send', return_value=3)
	def test_status_change_reaches_both_parties(self, mock_send):
		snapshot = {
			'request_id': self.request.id,
			'client_id': self.client_user.id,
			'provider_id': self.provider.id,
			'status': 'in_service',
			'sequence': 5,
		}

		broadcast_request_change(snapshot)

		groups, payload = mock_send.call_args[0]
		self.assertEqual(groups, [
			'request_%d' % self.request.id,
			'user_%d' % self.client_user.id,
			'user_%d' % self.provider.id,
		])
		self.assertEqual(payload['type'], 'request_status_changed')
		self.assertEqual(payload['sequence'], 5)

	@patch('realtime.broadcast._group_send', return_value=1)
	def test_tracking_feed_targets_engaged_request(self, mock_send):
		request_id = publish_provider_location(self.provider.id, -23.56, -46.64, heading=90)

		self.assertEqual(request_id, self.request.id)
		groups, payload = mock_send.call_args[0]
		self.assertEqual(groups, ['request_%d' % self.request.id])
		self.assertEqual(payload['type'], 'provider_location_updated')

	@patch('realtime.broadcast._group_send')
	def test_no_tracking_after_finish(self, mock_send):
		ServiceRequest.objects.filter(id=self.request.id).update(status='finished')

		self.assertEqual(publish_provider_location(self.provider.id, -23.56, -46.64), 0)
		mock_send.assert_not_called()
