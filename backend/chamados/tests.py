import json
from datetime import timedelta
from decimal import Decimal

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIRequestFactory, force_authenticate
from unittest.mock import patch

from accounts.models import User
from providers.models import ProviderProfile
from services.lifecycle import (
	create_request,
	engage_provider,
	decline_request,
	withdraw_provider,
	complete_service,
	confirm_completion,
	dispute_completion,
	cancel_request,
	retry_search,
	acknowledge_request,
	get_current_request_for_client,
	submit_review,
	ActiveRequestExists,
	InvalidTransition,
	InvalidValue,
	PermissionDenied,
	ProviderNotAvailableError,
)
from services.lifecycle.state_machine import can_transition, normalize_status
from services.matching.search_engine import is_offered, run_step
from services.negotiation import propose, accept_value, confirm_and_proceed, set_direct_payment, send_chat_message
from services.payments import begin_payment, payment_returned, confirm_payment, handle_gateway_event
from services.payments.coordinator import poll_attempt

from .models import ServiceRequest, SearchSession, PaymentAttempt, ChatMessage, Review
from .views import (
	create_request as create_request_view,
	get_current_request,
	engage_request,
	propose_value,
	payment_webhook,
	request_reviews,
)


ORIGIN = (Decimal('-23.550500'), Decimal('-46.633300'))
DESTINATION = (Decimal('-23.600000'), Decimal('-46.700000'))


@override_settings(
	GEO_INDEX_BACKEND='database',
	SEARCH_RADIUS_LADDER_KM=[5, 10],
	SEARCH_DWELL_SECONDS=30,
	SEARCH_COOLDOWN_SECONDS=10,
	SEARCH_QUERY_INTERVAL_SECONDS=5,
	STRIPE_SECRET_KEY='mock_test_key',
	STRIPE_WEBHOOK_SECRET='',
	AUTO_FINISH_MINUTES=15,
	PAYMENT_POLL_CEILING_SECONDS=120,
)
class ServiceRequestTestCase(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.client_user = User.objects.create_user(
			username='client',
			password='pass1234',
			role='client',
			phone_number='11900000000'
		)
		# ~2 km and ~8 km south of the origin
		self.provider_near = self.make_provider('provider_near', '-23.568500', '-46.633300')
		self.provider_far = self.make_provider('provider_far', '-23.622500', '-46.633300')

	def make_provider(self, username, lat, lon, services=None, online=True):
		user = User.objects.create_user(
			username=username,
			password='provider1234',
			role='provider',
			phone_number='11900000099'
		)
		ProviderProfile.objects.create(
			user=user,
			vehicle_plate='ABC-1234',
			services_offered=services or ['towing', 'tire'],
			is_online=online,
			current_latitude=Decimal(lat),
			current_longitude=Decimal(lon)
		)
		return user

	def create_towing_request(self, client=None):
		result = create_request(
			client or self.client_user,
			'towing',
			ORIGIN[0],
			ORIGIN[1],
			'Av. Paulista, 1000',
			destination_latitude=DESTINATION[0],
			destination_longitude=DESTINATION[1],
			destination_address='Oficina Central'
		)
		return result.request

	def open_session(self, request):
		return SearchSession.objects.get(request=request, closed_at__isnull=True)

	def step(self, session):
		session.refresh_from_db()
		return run_step(session.id, session.step_token)

	def age_session(self, session, seconds=120):
		past = timezone.now() - timedelta(seconds=seconds)
		SearchSession.objects.filter(id=session.id).update(stage_started_at=past, cooldown_deadline=past)

	def accepted_request(self):
		request = self.create_towing_request()
		self.step(self.open_session(request))
		engage_provider(self.provider_near, request.id)
		request.refresh_from_db()
		return request

	def awaiting_payment_request(self, value='150.00'):
		request = self.accepted_request()
		propose(self.provider_near, request.id, value)
		accept_value(self.client_user, request.id)
		confirm_and_proceed(self.client_user, request.id)
		request.refresh_from_db()
		return request

	def in_service_request(self):
		request = self.awaiting_payment_request()
		begin_payment(self.client_user, request.id, 'card', 'pm_card_visa')
		request.refresh_from_db()
		return request


class RequestCreationTests(ServiceRequestTestCase):
	def test_create_towing_request_starts_search(self):
		request = self.create_towing_request()

		self.assertEqual(request.status, 'searching')
		self.assertEqual(request.status_sequence, 1)
		session = self.open_session(request)
		self.assertEqual(session.state, 'searching')
		self.assertEqual(session.current_radius_km, 5)
		self.assertEqual(session.attempt, 1)

	def test_towing_requires_destination(self):
		with self.assertRaises(InvalidValue):
			create_request(self.client_user, 'towing', ORIGIN[0], ORIGIN[1], 'Av. Paulista, 1000')
		self.assertFalse(ServiceRequest.objects.exists())

	def test_tire_service_rejects_destination(self):
		with self.assertRaises(InvalidValue):
			create_request(
				self.client_user, 'tire', ORIGIN[0], ORIGIN[1], 'Av. Paulista, 1000',
				destination_latitude=DESTINATION[0], destination_longitude=DESTINATION[1]
			)

	def test_tire_service_without_destination(self):
		result = create_request(self.client_user, 'tire', ORIGIN[0], ORIGIN[1], 'Av. Paulista, 1000')

		self.assertIsNone(result.request.destination_latitude)
		self.assertFalse(result.request.requires_destination)

	def test_invalid_origin_is_rejected(self):
		with self.assertRaises(InvalidValue):
			create_request(self.client_user, 'tire', 123, ORIGIN[1], 'Nowhere')

	def test_second_active_request_is_refused(self):
		self.create_towing_request()
		with self.assertRaises(ActiveRequestExists):
			self.create_towing_request()

	def test_providers_cannot_create_requests(self):
		with self.assertRaises(PermissionDenied):
			self.create_towing_request(client=self.provider_near)


class SearchTests(ServiceRequestTestCase):
	def test_first_step_offers_providers_inside_radius(self):
		request = self.create_towing_request()
		session = self.open_session(request)

		self.assertEqual(self.step(session), 'provider_found')

		session.refresh_from_db()
		self.assertEqual(session.state, 'provider_found')
		self.assertEqual(session.offered_provider_ids, [self.provider_near.id])

	def test_offline_and_wrong_service_providers_are_skipped(self):
		ProviderProfile.objects.filter(user=self.provider_near).update(is_online=False)
		self.make_provider('locksmith_only', '-23.551000', '-46.633300', services=['locksmith'])
		request = self.create_towing_request()

		self.assertEqual(self.step(self.open_session(request)), 'requery')

	def test_busy_provider_is_not_offered(self):
		self.accepted_request()
		other_client = User.objects.create_user(username='other', password='pass1234', role='client')
		request = self.create_towing_request(client=other_client)

		self.assertEqual(self.step(self.open_session(request)), 'requery')

	def test_radius_expands_after_dwell_and_cooldown(self):
		ProviderProfile.objects.filter(user=self.provider_near).update(is_online=False)
		request = self.create_towing_request()
		session = self.open_session(request)

		self.assertEqual(self.step(session), 'requery')
		self.age_session(session)
		self.assertEqual(self.step(session), 'cooldown')
		self.age_session(session)
		self.assertEqual(self.step(session), 'provider_found')

		session.refresh_from_db()
		self.assertEqual(session.current_radius_km, 10)
		self.assertEqual(session.offered_provider_ids, [self.provider_far.id])

	def test_unanswered_offer_excludes_provider_for_the_session(self):
		request = self.create_towing_request()
		session = self.open_session(request)
		self.step(session)

		self.age_session(session)
		self.assertEqual(self.step(session), 'cooldown')

		session.refresh_from_db()
		self.assertIn(self.provider_near.id, session.excluded_provider_ids)
		self.assertEqual(session.offered_provider_ids, [])

	def test_search_times_out_then_retries(self):
		ProviderProfile.objects.update(is_online=False)
		request = self.create_towing_request()
		session = self.open_session(request)

		outcomes = []
		for _ in range(6):
			session.refresh_from_db()
			if not session.is_open:
				break
			outcomes.append(self.step(session))
			self.age_session(session)

		self.assertEqual(outcomes[-1], 'timeout')
		session.refresh_from_db()
		self.assertEqual(session.state, 'timeout')
		request.refresh_from_db()
		self.assertEqual(request.status, 'searching')

		result = retry_search(self.client_user, request.id)
		new_session = self.open_session(request)
		self.assertEqual(result.extra['attempt'], 2)
		self.assertEqual(new_session.current_radius_km, 5)

	def test_retry_requires_timed_out_search(self):
		request = self.create_towing_request()
		with self.assertRaises(InvalidTransition):
			retry_search(self.client_user, request.id)

	def test_stale_step_after_cancel_never_offers(self):
		request = self.create_towing_request()
		session = self.open_session(request)
		old_token = session.step_token

		cancel_request(self.client_user, request.id, 'changed_mind')

		with patch('services.matching.search_engine.run_search_step.apply_async'), \
				patch('realtime.notifications.notify_provider_found') as mock_found, \
				self.captureOnCommitCallbacks(execute=True):
			outcome = run_step(session.id, old_token)

		self.assertEqual(outcome, 'stale')
		mock_found.assert_not_called()

	def test_provider_found_notifies_after_commit(self):
		request = self.create_towing_request()
		session = self.open_session(request)

		with patch('services.matching.search_engine.run_search_step.apply_async') as mock_schedule, \
				patch('realtime.notifications.notify_provider_offers') as mock_offers, \
				patch('realtime.notifications.notify_provider_found') as mock_found, \
				self.captureOnCommitCallbacks(execute=True):
			self.step(session)

		mock_found.assert_called_once()
		mock_offers.assert_called_once()
		self.assertEqual(list(mock_offers.call_args[0][1]), [self.provider_near.id])
		session.refresh_from_db()
		mock_schedule.assert_called_once_with((session.id, session.step_token), countdown=30)

	def test_outdated_token_is_ignored(self):
		request = self.create_towing_request()
		session = self.open_session(request)

		self.assertEqual(run_step(session.id, session.step_token - 1), 'stale')


class EngagementTests(ServiceRequestTestCase):
	def test_first_engage_wins(self):
		self.make_provider('provider_two', '-23.560000', '-46.633300')
		request = self.create_towing_request()
		self.step(self.open_session(request))
		second = User.objects.get(username='provider_two')

		engage_provider(self.provider_near, request.id)
		with self.assertRaises(InvalidTransition):
			engage_provider(second, request.id)

		request.refresh_from_db()
		self.assertEqual(request.status, 'accepted')
		self.assertEqual(request.provider, self.provider_near)
		self.assertFalse(SearchSession.objects.filter(request=request, closed_at__isnull=True).exists())

	def test_engage_requires_offer(self):
		request = self.create_towing_request()
		self.step(self.open_session(request))

		with self.assertRaises(PermissionDenied):
			engage_provider(self.provider_far, request.id)

	def test_offline_provider_cannot_engage(self):
		request = self.create_towing_request()
		self.step(self.open_session(request))
		ProviderProfile.objects.filter(user=self.provider_near).update(is_online=False)

		with self.assertRaises(ProviderNotAvailableError):
			engage_provider(self.provider_near, request.id)

	def test_decline_forces_next_radius(self):
		request = self.create_towing_request()
		session = self.open_session(request)
		self.step(session)

		decline_request(self.provider_near, request.id)

		request.refresh_from_db()
		session.refresh_from_db()
		self.assertEqual(request.excluded_provider_ids, [self.provider_near.id])
		self.assertIn(self.provider_near.id, session.excluded_provider_ids)
		self.assertEqual(session.state, 'expanding_radius')
		self.assertEqual(session.current_radius_km, 10)

		self.assertEqual(self.step(session), 'provider_found')
		session.refresh_from_db()
		self.assertEqual(session.offered_provider_ids, [self.provider_far.id])

	def test_decline_requeries_same_radius_when_others_remain(self):
		provider_two = self.make_provider('provider_two', '-23.560000', '-46.633300')
		request = self.create_towing_request()
		session = self.open_session(request)
		self.step(session)
		session.refresh_from_db()
		self.assertEqual(sorted(session.offered_provider_ids), sorted([self.provider_near.id, provider_two.id]))

		decline_request(self.provider_near, request.id)

		session.refresh_from_db()
		self.assertEqual(session.current_index, 0)
		self.assertEqual(session.state, 'expanding_radius')
		self.assertEqual(session.offered_provider_ids, [provider_two.id])

		self.assertEqual(self.step(session), 'provider_found')
		session.refresh_from_db()
		self.assertEqual(session.current_radius_km, 5)
		self.assertEqual(session.offered_provider_ids, [provider_two.id])
		self.assertNotIn(self.provider_near.id, session.offered_provider_ids)

	def test_requery_without_results_drops_remaining_offer(self):
		provider_two = self.make_provider('provider_two', '-23.560000', '-46.633300')
		request = self.create_towing_request()
		session = self.open_session(request)
		self.step(session)
		decline_request(self.provider_near, request.id)
		ProviderProfile.objects.filter(user=provider_two).update(is_online=False)

		self.assertEqual(self.step(session), 'expanding')

		session.refresh_from_db()
		self.assertEqual(session.state, 'searching')
		self.assertEqual(session.offered_provider_ids, [])
		self.assertFalse(is_offered(request, provider_two.id))

	def test_engage_holds_provider_lock_before_busy_check(self):
		other_client = User.objects.create_user(username='other_client', password='pass1234', role='client')
		first = self.create_towing_request()
		second = self.create_towing_request(client=other_client)
		self.step(self.open_session(first))
		self.step(self.open_session(second))

		with patch('services.lifecycle.request_lifecycle.lock_user') as mock_lock:
			engage_provider(self.provider_near, first.id)
		mock_lock.assert_called_once_with(self.provider_near.id)

		with self.assertRaises(ProviderNotAvailableError):
			engage_provider(self.provider_near, second.id)
		second.refresh_from_db()
		self.assertEqual(second.status, 'searching')

	def test_declined_provider_cannot_engage(self):
		request = self.create_towing_request()
		self.step(self.open_session(request))
		decline_request(self.provider_near, request.id)

		with self.assertRaises(PermissionDenied):
			engage_provider(self.provider_near, request.id)

	def test_withdraw_returns_to_searching_without_provider(self):
		request = self.accepted_request()
		propose(self.provider_near, request.id, '120')

		withdraw_provider(self.provider_near, request.id, 'Vehicle broke down')

		request.refresh_from_db()
		self.assertEqual(request.status, 'searching')
		self.assertIsNone(request.provider)
		self.assertIsNone(request.proposed_value)
		self.assertEqual(request.last_proposal_by, 'none')
		self.assertIn(self.provider_near.id, request.excluded_provider_ids)

		session = self.open_session(request)
		self.assertEqual(session.attempt, 2)
		self.assertIn(self.provider_near.id, session.excluded_provider_ids)

	def test_withdraw_after_agreement_is_refused(self):
		request = self.accepted_request()
		propose(self.provider_near, request.id, '120')
		accept_value(self.client_user, request.id)

		with self.assertRaises(InvalidTransition):
			withdraw_provider(self.provider_near, request.id)

	def test_exclusions_only_grow(self):
		request = self.create_towing_request()
		self.step(self.open_session(request))
		decline_request(self.provider_near, request.id)
		session = self.open_session(request)
		self.step(session)
		engage_provider(self.provider_far, request.id)
		withdraw_provider(self.provider_far, request.id)

		request.refresh_from_db()
		self.assertEqual(request.excluded_provider_ids, [self.provider_near.id, self.provider_far.id])


class NegotiationTests(ServiceRequestTestCase):
	def test_first_proposal_opens_negotiation(self):
		request = self.accepted_request()

		propose(self.provider_near, request.id, '150,50')

		request.refresh_from_db()
		self.assertEqual(request.status, 'negotiating')
		self.assertEqual(request.proposed_value, Decimal('150.50'))
		self.assertEqual(request.last_proposal_by, 'provider')
		self.assertTrue(
			ChatMessage.objects.filter(request=request, sender_type='system', message='Proposed value: R$ 150.50').exists()
		)

	def test_sides_alternate(self):
		request = self.accepted_request()
		propose(self.provider_near, request.id, '150')

		with self.assertRaises(InvalidTransition):
			propose(self.provider_near, request.id, '140')

		propose(self.client_user, request.id, '120')
		request.refresh_from_db()
		self.assertEqual(request.proposed_value, Decimal('120.00'))
		self.assertEqual(request.last_proposal_by, 'client')

	def test_invalid_values_are_rejected(self):
		request = self.accepted_request()
		for value in ['0', '-10', 'abc', 'NaN', '']:
			with self.assertRaises(InvalidValue):
				propose(self.provider_near, request.id, value)

		request.refresh_from_db()
		self.assertEqual(request.status, 'accepted')
		self.assertIsNone(request.proposed_value)

	def test_cannot_accept_own_proposal(self):
		request = self.accepted_request()
		propose(self.provider_near, request.id, '150')

		with self.assertRaises(InvalidTransition):
			accept_value(self.provider_near, request.id)

	def test_accept_is_idempotent_and_freezes_value(self):
		request = self.accepted_request()
		propose(self.provider_near, request.id, '150')

		first = accept_value(self.client_user, request.id)
		request.refresh_from_db()
		updated_at = request.updated_at

		second = accept_value(self.client_user, request.id)
		request.refresh_from_db()

		self.assertFalse(first.extra['already_accepted'])
		self.assertTrue(second.extra['already_accepted'])
		self.assertEqual(request.updated_at, updated_at)
		self.assertEqual(request.agreed_value, Decimal('150.00'))

		with self.assertRaises(InvalidTransition):
			propose(self.client_user, request.id, '100')
		request.refresh_from_db()
		self.assertEqual(request.agreed_value, Decimal('150.00'))

	def test_confirm_requires_accepted_value(self):
		request = self.accepted_request()
		propose(self.provider_near, request.id, '150')

		with self.assertRaises(InvalidTransition):
			confirm_and_proceed(self.client_user, request.id)

	def test_provider_cannot_confirm_and_proceed(self):
		request = self.accepted_request()
		propose(self.provider_near, request.id, '150')
		accept_value(self.client_user, request.id)

		with self.assertRaises(PermissionDenied):
			confirm_and_proceed(self.provider_near, request.id)

	def test_chat_between_participants(self):
		request = self.accepted_request()

		message = send_chat_message(self.client_user, request.id, '  Estou no posto  ')

		self.assertEqual(message.sender_type, 'client')
		self.assertEqual(message.message, 'Estou no posto')
		with self.assertRaises(PermissionDenied):
			send_chat_message(self.provider_far, request.id, 'hello')


class PaymentTests(ServiceRequestTestCase):
	def test_card_payment_starts_service(self):
		request = self.awaiting_payment_request()

		result = begin_payment(self.client_user, request.id, 'card', 'pm_card_visa')

		self.assertTrue(result.success)
		request.refresh_from_db()
		self.assertEqual(request.status, 'in_service')
		self.assertTrue(request.payment_confirmed)
		self.assertEqual(request.payment_status, 'paid')
		attempt = PaymentAttempt.objects.get(id=result.extra['attempt_id'])
		self.assertEqual(attempt.status, 'succeeded')
		self.assertEqual(attempt.confirmed_via, 'client')
		self.assertEqual(attempt.amount, Decimal('150.00'))

	def test_declined_card_keeps_agreed_value(self):
		request = self.awaiting_payment_request()

		result = begin_payment(self.client_user, request.id, 'card', 'pm_card_chargeDeclined')

		self.assertFalse(result.success)
		self.assertEqual(result.error_code, 'payment_failed')
		request.refresh_from_db()
		self.assertEqual(request.status, 'awaiting_payment')
		self.assertEqual(request.payment_status, 'failed')
		self.assertEqual(request.agreed_value, Decimal('150.00'))

		retry = begin_payment(self.client_user, request.id, 'wallet', 'pm_card_visa')
		self.assertTrue(retry.success)
		request.refresh_from_db()
		self.assertEqual(request.status, 'in_service')

	def test_direct_payment_requires_agreement(self):
		request = self.awaiting_payment_request()

		with self.assertRaises(InvalidTransition):
			begin_payment(self.client_user, request.id, 'direct_to_provider')

	def test_direct_payment_when_agreed(self):
		request = self.accepted_request()
		propose(self.provider_near, request.id, '90')
		accept_value(self.client_user, request.id)
		set_direct_payment(self.client_user, request.id, True)
		confirm_and_proceed(self.client_user, request.id)

		result = begin_payment(self.client_user, request.id, 'direct_to_provider')

		request.refresh_from_db()
		self.assertEqual(request.status, 'in_service')
		self.assertEqual(PaymentAttempt.objects.get(id=result.extra['attempt_id']).confirmed_via, 'direct')

	def test_instant_transfer_confirmed_by_push(self):
		request = self.awaiting_payment_request()
		result = begin_payment(self.client_user, request.id, 'instant_transfer')
		attempt = PaymentAttempt.objects.get(id=result.extra['attempt_id'])

		self.assertTrue(result.extra['checkout_url'])
		payment_returned(self.client_user, request.id, attempt.id)
		attempt.refresh_from_db()
		self.assertEqual(attempt.status, 'confirming')

		payload = json.dumps({
			'type': 'checkout.session.completed',
			'data': {'object': {
				'id': attempt.gateway_reference,
				'payment_status': 'paid',
				'metadata': {'request_id': str(request.id), 'attempt_id': str(attempt.id)},
			}},
		}).encode()

		self.assertEqual(handle_gateway_event(payload, ''), 'confirmed')
		self.assertEqual(handle_gateway_event(payload, ''), 'ignored')

		request.refresh_from_db()
		attempt.refresh_from_db()
		self.assertEqual(request.status, 'in_service')
		self.assertEqual(attempt.confirmed_via, 'push')
		self.assertEqual(poll_attempt(attempt.id), 'stopped')

	def test_polling_stops_at_ceiling(self):
		request = self.awaiting_payment_request()
		result = begin_payment(self.client_user, request.id, 'instant_transfer')
		attempt_id = result.extra['attempt_id']
		payment_returned(self.client_user, request.id, attempt_id)

		self.assertEqual(poll_attempt(attempt_id), 'pending')

		PaymentAttempt.objects.filter(id=attempt_id).update(
			poll_started_at=timezone.now() - timedelta(seconds=300)
		)
		with patch('realtime.notifications.notify_client_event') as mock_notify:
			self.assertEqual(poll_attempt(attempt_id), 'ceiling')

		self.assertEqual(mock_notify.call_args[0][0], 'payment_unconfirmed')
		request.refresh_from_db()
		self.assertEqual(request.status, 'awaiting_payment')

	def test_cancel_wins_over_late_confirmation(self):
		request = self.awaiting_payment_request()
		result = begin_payment(self.client_user, request.id, 'instant_transfer')
		attempt_id = result.extra['attempt_id']

		cancel_request(self.client_user, request.id, 'changed_mind')

		self.assertEqual(confirm_payment(request.id, attempt_id, source='push'), 'refund_required')
		request.refresh_from_db()
		self.assertEqual(request.status, 'canceled')
		self.assertFalse(request.payment_confirmed)
		attempt = PaymentAttempt.objects.get(id=attempt_id)
		self.assertEqual(attempt.status, 'succeeded')
		self.assertTrue(attempt.refund_required)
		self.assertFalse(request.status_events.filter(to_status='in_service').exists())

	def test_new_attempt_supersedes_open_one(self):
		request = self.awaiting_payment_request()
		first = begin_payment(self.client_user, request.id, 'instant_transfer')

		begin_payment(self.client_user, request.id, 'card', 'pm_card_visa')

		self.assertEqual(PaymentAttempt.objects.get(id=first.extra['attempt_id']).status, 'superseded')

	def test_push_then_poll_moves_to_in_service_once(self):
		request = self.awaiting_payment_request()
		result = begin_payment(self.client_user, request.id, 'instant_transfer')
		attempt_id = result.extra['attempt_id']
		payment_returned(self.client_user, request.id, attempt_id)

		self.assertEqual(confirm_payment(request.id, attempt_id, source='push'), 'confirmed')
		self.assertEqual(poll_attempt(attempt_id), 'stopped')
		self.assertEqual(confirm_payment(request.id, attempt_id, source='poll'), 'ignored')

		request.refresh_from_db()
		self.assertEqual(request.status, 'in_service')
		self.assertEqual(request.status_events.filter(to_status='in_service').count(), 1)
		self.assertEqual(PaymentAttempt.objects.get(id=attempt_id).confirmed_via, 'push')

	@patch('services.payments.coordinator.release_payment_intent')
	def test_replaced_attempt_is_released_at_gateway(self, mock_release):
		request = self.awaiting_payment_request()
		first = begin_payment(self.client_user, request.id, 'instant_transfer')

		with self.captureOnCommitCallbacks(execute=True):
			begin_payment(self.client_user, request.id, 'card', 'pm_card_visa')

		mock_release.delay.assert_called_once_with(first.extra['attempt_id'])

	def test_paying_a_replaced_attempt_closes_the_newer_one(self):
		request = self.awaiting_payment_request()
		first = begin_payment(self.client_user, request.id, 'instant_transfer')
		second = begin_payment(self.client_user, request.id, 'instant_transfer')

		outcome = confirm_payment(request.id, first.extra['attempt_id'], 'push')

		self.assertEqual(outcome, 'confirmed')
		self.assertEqual(PaymentAttempt.objects.get(id=second.extra['attempt_id']).status, 'superseded')
		request.refresh_from_db()
		self.assertEqual(request.status, 'in_service')

	@patch('services.payments.coordinator.release_payment_intent')
	def test_cancel_releases_open_checkout(self, mock_release):
		request = self.awaiting_payment_request()
		result = begin_payment(self.client_user, request.id, 'instant_transfer')

		with self.captureOnCommitCallbacks(execute=True):
			cancel_request(self.client_user, request.id, 'changed_mind')

		mock_release.delay.assert_called_once_with(result.extra['attempt_id'])
		self.assertEqual(PaymentAttempt.objects.get(id=result.extra['attempt_id']).failure_reason, 'request canceled')

	@patch('realtime.broadcast.broadcast_request_update')
	@patch('realtime.notifications.notify_client_event')
	def test_replaced_attempt_paid_later_is_flagged_for_refund(self, mock_notify, mock_broadcast):
		request = self.awaiting_payment_request()
		pix = begin_payment(self.client_user, request.id, 'instant_transfer')
		pix_attempt = PaymentAttempt.objects.get(id=pix.extra['attempt_id'])
		begin_payment(self.client_user, request.id, 'card', 'pm_card_visa')

		payload = json.dumps({
			'type': 'checkout.session.completed',
			'data': {'object': {
				'id': pix_attempt.gateway_reference,
				'payment_status': 'paid',
				'metadata': {'request_id': str(request.id), 'attempt_id': str(pix_attempt.id)},
			}},
		}).encode()

		with self.captureOnCommitCallbacks(execute=True):
			outcome = handle_gateway_event(payload, '')

		self.assertEqual(outcome, 'refund_required')
		pix_attempt.refresh_from_db()
		self.assertEqual(pix_attempt.status, 'succeeded')
		self.assertTrue(pix_attempt.refund_required)
		self.assertEqual(pix_attempt.confirmed_via, 'push')

		request.refresh_from_db()
		self.assertEqual(request.status, 'in_service')
		self.assertEqual(request.status_events.filter(to_status='in_service').count(), 1)
		self.assertEqual(mock_notify.call_args[0][0], 'payment_refund_required')
		self.assertTrue(mock_broadcast.call_args[0][2]['refund_required'])


class CompletionTests(ServiceRequestTestCase):
	def test_full_lifecycle_history(self):
		request = self.in_service_request()
		complete_service(self.provider_near, request.id)
		confirm_completion(self.client_user, request.id)

		request.refresh_from_db()
		self.assertEqual(request.status, 'finished')
		events = list(request.status_events.all())
		self.assertEqual(
			[e.to_status for e in events],
			['searching', 'accepted', 'negotiating', 'awaiting_payment', 'in_service',
			 'pending_client_confirmation', 'finished']
		)
		self.assertEqual([e.sequence for e in events], list(range(1, 8)))
		timestamps = [e.created_at for e in events]
		self.assertEqual(timestamps, sorted(set(timestamps)))

		self.client_user.refresh_from_db()
		self.provider_near.refresh_from_db()
		self.assertEqual(self.client_user.completed_services, 1)
		self.assertEqual(self.provider_near.completed_services, 1)
		self.assertEqual(ProviderProfile.objects.get(user=self.provider_near).total_services, 1)

	def test_dispute_returns_to_in_service(self):
		request = self.in_service_request()
		complete_service(self.provider_near, request.id)

		dispute_completion(self.client_user, request.id, 'Tire still flat')

		request.refresh_from_db()
		self.assertEqual(request.status, 'in_service')
		self.assertIsNone(request.provider_finished_at)

	def test_auto_finish_after_timeout(self):
		request = self.in_service_request()
		complete_service(self.provider_near, request.id)
		ServiceRequest.objects.filter(id=request.id).update(
			provider_finished_at=timezone.now() - timedelta(minutes=20)
		)

		call_command('process_pending_confirmations')

		request.refresh_from_db()
		self.assertEqual(request.status, 'finished')
		self.assertTrue(request.auto_finished)
		self.assertEqual(request.status_events.last().actor, 'system')

	def test_recent_completion_is_not_auto_finished(self):
		request = self.in_service_request()
		complete_service(self.provider_near, request.id)

		call_command('process_pending_confirmations')

		request.refresh_from_db()
		self.assertEqual(request.status, 'pending_client_confirmation')

	def test_finished_request_shown_until_acknowledged(self):
		request = self.in_service_request()
		complete_service(self.provider_near, request.id)
		confirm_completion(self.client_user, request.id)

		self.assertEqual(get_current_request_for_client(self.client_user), request)
		acknowledge_request(self.client_user, request.id)
		self.assertIsNone(get_current_request_for_client(self.client_user))

	def test_terminal_request_cannot_be_canceled(self):
		request = self.in_service_request()
		complete_service(self.provider_near, request.id)
		confirm_completion(self.client_user, request.id)

		with self.assertRaises(InvalidTransition):
			cancel_request(self.client_user, request.id, 'changed_mind')


class ReviewTests(ServiceRequestTestCase):
	def finished_request(self):
		request = self.in_service_request()
		complete_service(self.provider_near, request.id)
		confirm_completion(self.client_user, request.id)
		request.refresh_from_db()
		return request

	def test_client_review_updates_provider_rating(self):
		request = self.finished_request()

		review = submit_review(self.client_user, request.id, 4, ['pontual', 'pontual'], 'Arrived fast')

		self.assertEqual(review.reviewed, self.provider_near)
		self.assertEqual(review.reviewer_side, 'client')
		self.assertEqual(review.tags, ['pontual'])
		self.assertEqual(ProviderProfile.objects.get(user=self.provider_near).rating, Decimal('4.00'))

	def test_provider_review_leaves_rating_alone(self):
		request = self.finished_request()

		review = submit_review(self.provider_near, request.id, 2)

		self.assertEqual(review.reviewed, self.client_user)
		self.assertEqual(ProviderProfile.objects.get(user=self.provider_near).rating, Decimal('5.00'))

	def test_one_review_per_side(self):
		request = self.finished_request()
		submit_review(self.client_user, request.id, 5)

		with self.assertRaises(InvalidTransition):
			submit_review(self.client_user, request.id, 1)
		submit_review(self.provider_near, request.id, 5)
		self.assertEqual(Review.objects.filter(request=request).count(), 2)

	def test_only_finished_requests_are_reviewed(self):
		request = self.in_service_request()

		with self.assertRaises(InvalidTransition):
			submit_review(self.client_user, request.id, 5)

	def test_invalid_reviews_are_rejected(self):
		request = self.finished_request()

		for rating, tags in [(0, []), (6, []), ('great', []), (5, ['unknown_tag'])]:
			with self.assertRaises(InvalidValue):
				submit_review(self.client_user, request.id, rating, tags)
		self.assertFalse(Review.objects.exists())

	def test_outsiders_cannot_review(self):
		request = self.finished_request()

		with self.assertRaises(PermissionDenied):
			submit_review(self.provider_far, request.id, 1)

	def test_review_endpoint(self):
		service_request = self.finished_request()

		request = self.factory.post(
			f'/api/requests/{service_request.id}/reviews/',
			{'rating': 5, 'tags': ['excelente'], 'comment': 'Great'},
			format='json'
		)
		force_authenticate(request, user=self.client_user)
		response = request_reviews(request, request_id=service_request.id)

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['rating'], 5)

		request = self.factory.get(f'/api/requests/{service_request.id}/reviews/')
		force_authenticate(request, user=self.provider_near)
		response = request_reviews(request, request_id=service_request.id)

		self.assertEqual(len(response.data), 1)
		self.assertEqual(response.data[0]['reviewer_side'], 'client')


class StateMachineTests(TestCase):
	def test_legacy_confirmed_status_maps_to_in_service(self):
		self.assertEqual(normalize_status('confirmed'), 'in_service')
		self.assertTrue(can_transition('awaiting_payment', 'confirmed'))
		self.assertFalse(can_transition('searching', 'confirmed'))

	def test_terminal_statuses_have_no_exits(self):
		for target in ['searching', 'accepted', 'in_service', 'canceled']:
			self.assertFalse(can_transition('finished', target))
			self.assertFalse(can_transition('canceled', target))


class RequestViewTests(ServiceRequestTestCase):
	def create_payload(self):
		return {
			'service_type': 'towing',
			'origin_latitude': '-23.550500',
			'origin_longitude': '-46.633300',
			'origin_address': 'Av. Paulista, 1000',
			'destination_latitude': '-23.600000',
			'destination_longitude': '-46.700000',
			'destination_address': 'Oficina Central',
		}

	def test_create_request_endpoint(self):
		request = self.factory.post('/api/requests/', self.create_payload(), format='json')
		force_authenticate(request, user=self.client_user)
		response = create_request_view(request)

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['request']['status'], 'searching')

		request = self.factory.post('/api/requests/', self.create_payload(), format='json')
		force_authenticate(request, user=self.client_user)
		response = create_request_view(request)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['code'], 'active_request_exists')

	def test_current_request_is_idle_without_requests(self):
		request = self.factory.get('/api/requests/current/')
		force_authenticate(request, user=self.client_user)
		response = get_current_request(request)

		self.assertEqual(response.status_code, 200)
		self.assertFalse(response.data['has_active_request'])
		self.assertEqual(response.data['status'], 'idle')

	def test_current_request_includes_search(self):
		self.create_towing_request()

		request = self.factory.get('/api/requests/current/')
		force_authenticate(request, user=self.client_user)
		response = get_current_request(request)

		self.assertTrue(response.data['has_active_request'])
		self.assertEqual(response.data['search']['state'], 'searching')

	def test_engage_without_offer_is_forbidden(self):
		service_request = self.create_towing_request()

		request = self.factory.post('/api/requests/%d/engage/' % service_request.id)
		force_authenticate(request, user=self.provider_near)
		response = engage_request(request, request_id=service_request.id)

		self.assertEqual(response.status_code, 403)

	def test_invalid_proposal_is_bad_request(self):
		service_request = self.accepted_request()

		request = self.factory.post(
			'/api/requests/%d/negotiation/propose/' % service_request.id, {'value': 'abc'}, format='json'
		)
		force_authenticate(request, user=self.provider_near)
		response = propose_value(request, request_id=service_request.id)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['code'], 'invalid_value')

	def test_unknown_request_is_not_found(self):
		request = self.factory.post('/api/requests/999/engage/')
		force_authenticate(request, user=self.provider_near)
		response = engage_request(request, request_id=999)

		self.assertEqual(response.status_code, 404)

	def test_webhook_confirms_payment(self):
		service_request = self.awaiting_payment_request()
		result = begin_payment(self.client_user, service_request.id, 'instant_transfer')
		attempt = PaymentAttempt.objects.get(id=result.extra['attempt_id'])

		payload = {
			'type': 'payment_intent.succeeded',
			'data': {'object': {
				'id': 'pi_unknown',
				'metadata': {'request_id': str(service_request.id), 'attempt_id': str(attempt.id)},
			}},
		}
		request = self.factory.post('/api/payments/webhook/', json.dumps(payload), content_type='application/json')
		response = payment_webhook(request)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['outcome'], 'confirmed')
		service_request.refresh_from_db()
		self.assertEqual(service_request.status, 'in_service')
