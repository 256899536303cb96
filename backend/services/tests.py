import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests
from django.test import SimpleTestCase, override_settings

from services.lifecycle.exceptions import ExternalUnavailable, InvalidValue, PaymentFailed
from services.negotiation.protocol import parse_value, format_brl
from services.payments.gateway import StripeGateway, to_cents


def sign(payload: bytes, secret: str, timestamp=None) -> str:
	timestamp = timestamp or int(time.time())
	signed = f"{timestamp}.{payload.decode()}"
	digest = hmac.new(secret.encode(), signed.encode(), hashlib.sha256).hexdigest()
	return f"t={timestamp},v1={digest}"


class ValueParsingTests(SimpleTestCase):
	def test_parse_value(self):
		self.assertEqual(parse_value('150'), Decimal('150.00'))
		self.assertEqual(parse_value('99,999'), Decimal('100.00'))
		self.assertEqual(parse_value(Decimal('0.01')), Decimal('0.01'))

	def test_rejects_non_positive_and_garbage(self):
		for raw in [None, True, '0', '0.001', '-5', 'Infinity', 'R$ 10', '1e12']:
			with self.assertRaises(InvalidValue):
				parse_value(raw)

	def test_format_brl(self):
		self.assertEqual(format_brl(Decimal('150.5')), 'R$ 150.50')

	def test_to_cents(self):
		self.assertEqual(to_cents(Decimal('150.50')), 15050)


@override_settings(STRIPE_SECRET_KEY='sk_test_123', STRIPE_WEBHOOK_SECRET='whsec_test')
class StripeWebhookTests(SimpleTestCase):
	def setUp(self):
		self.gateway = StripeGateway()
		self.payload = json.dumps({
			'type': 'payment_intent.succeeded',
			'data': {'object': {'id': 'pi_123', 'metadata': {'attempt_id': '4', 'request_id': '9'}}},
		}).encode()

	def test_valid_signature(self):
		event = self.gateway.parse_event(self.payload, sign(self.payload, 'whsec_test'))

		self.assertTrue(event.succeeded)
		self.assertEqual(event.reference, 'pi_123')
		self.assertEqual(event.attempt_id, 4)
		self.assertEqual(event.request_id, 9)

	def test_wrong_secret_is_rejected(self):
		with self.assertRaises(InvalidValue):
			self.gateway.parse_event(self.payload, sign(self.payload, 'whsec_other'))

	def test_old_timestamp_is_rejected(self):
		with self.assertRaises(InvalidValue):
			self.gateway.parse_event(self.payload, sign(self.payload, 'whsec_test', int(time.time()) - 600))

	def test_malformed_header_is_rejected(self):
		with self.assertRaises(InvalidValue):
			self.gateway.parse_event(self.payload, 'garbage')

	def test_unpaid_checkout_is_not_a_success(self):
		payload = json.dumps({
			'type': 'checkout.session.completed',
			'data': {'object': {'id': 'cs_1', 'payment_status': 'unpaid'}},
		}).encode()

		event = self.gateway.parse_event(payload, sign(payload, 'whsec_test'))

		self.assertFalse(event.succeeded)
		self.assertFalse(event.failed)


@override_settings(STRIPE_SECRET_KEY='sk_test_123')
class StripeIntentTests(SimpleTestCase):
	def setUp(self):
		self.gateway = StripeGateway()

	def response(self, status_code, body):
		resp = MagicMock()
		resp.status_code = status_code
		resp.json.return_value = body
		return resp

	@patch('services.payments.gateway.requests.request')
	def test_card_intent_confirmed(self, mock_request):
		mock_request.return_value = self.response(200, {
			'id': 'pi_abc', 'status': 'succeeded', 'client_secret': 'pi_abc_secret',
		})

		intent = self.gateway.create_intent(1, 2, 'card', Decimal('150.00'), 'pm_card_visa')

		self.assertTrue(intent.confirmed)
		self.assertEqual(intent.reference, 'pi_abc')
		self.assertEqual(mock_request.call_args.kwargs['data']['amount'], 15000)

	@patch('services.payments.gateway.requests.request')
	def test_card_declined(self, mock_request):
		mock_request.return_value = self.response(402, {
			'error': {'type': 'card_error', 'message': 'Your card was declined.'},
		})

		with self.assertRaises(PaymentFailed):
			self.gateway.create_intent(1, 2, 'card', Decimal('150.00'), 'pm_card_chargeDeclined')

	@patch('services.payments.gateway.requests.request', side_effect=requests.ConnectionError('down'))
	def test_gateway_unreachable(self, mock_request):
		with self.assertRaises(ExternalUnavailable):
			self.gateway.poll_status('pi_abc')

	@patch('services.payments.gateway.requests.request')
	def test_poll_paid_checkout(self, mock_request):
		mock_request.return_value = self.response(200, {'id': 'cs_abc', 'payment_status': 'paid'})

		self.assertTrue(self.gateway.poll_status('cs_abc').confirmed)

	@patch('services.payments.gateway.requests.request')
	def test_cancel_intent_expires_checkout(self, mock_request):
		mock_request.return_value = self.response(200, {'id': 'cs_abc', 'status': 'expired'})

		self.assertTrue(self.gateway.cancel_intent('cs_abc'))
		self.assertEqual(mock_request.call_args[0][0], 'POST')
		self.assertTrue(mock_request.call_args[0][1].endswith('/checkout/sessions/cs_abc/expire'))

	@patch('services.payments.gateway.requests.request')
	def test_cancel_intent_cancels_payment_intent(self, mock_request):
		mock_request.return_value = self.response(200, {'id': 'pi_abc', 'status': 'canceled'})

		self.gateway.cancel_intent('pi_abc')

		self.assertTrue(mock_request.call_args[0][1].endswith('/payment_intents/pi_abc/cancel'))

	@patch('services.payments.gateway.requests.request')
	def test_cancel_intent_refused_after_payment(self, mock_request):
		mock_request.return_value = self.response(400, {
			'error': {'type': 'invalid_request_error', 'message': 'This session is already complete.'},
		})

		with self.assertRaises(InvalidValue):
			self.gateway.cancel_intent('cs_abc')
