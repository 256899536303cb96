from decimal import Decimal

import redis
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIRequestFactory, force_authenticate
from unittest.mock import MagicMock, patch

from accounts.models import User
from chamados.models import ServiceRequest
from realtime.geo import IndexedProvider
from services.lifecycle.exceptions import ExternalUnavailable, ProviderNotAvailableError
from services.matching.geo_index import DatabaseGeoIndex, RedisGeoIndex

from .models import ProviderProfile
from .services import set_provider_online
from .views import (
	ProviderOnlineView,
	ProviderLocationUpdateView,
	ProviderServicesView,
	ProviderCurrentRequestView,
)


@override_settings(GEO_INDEX_BACKEND='database')
class ProviderViewTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.client_user = User.objects.create_user(
			username='client',
			password='pass1234',
			role='client'
		)
		self.provider = User.objects.create_user(
			username='provider',
			password='provider1234',
			role='provider',
			phone_number='11900000001'
		)
		self.profile = ProviderProfile.objects.create(
			user=self.provider,
			vehicle_plate='GUI-4321',
			services_offered=['towing'],
			is_online=False
		)

	def engage(self, status='in_service'):
		return ServiceRequest.objects.create(
			client=self.client_user,
			provider=self.provider,
			service_type='tire',
			origin_latitude=Decimal('-23.550500'),
			origin_longitude=Decimal('-46.633300'),
			origin_address='Av. Paulista, 1000',
			status=status,
			status_sequence=4,
			updated_at=timezone.now(),
		)

	def test_go_online(self):
		request = self.factory.put('/api/provider/online/', {'is_online': True}, format='json')
		force_authenticate(request, user=self.provider)
		response = ProviderOnlineView.as_view()(request)

		self.assertEqual(response.status_code, 200)
		self.profile.refresh_from_db()
		self.assertTrue(self.profile.is_online)

	def test_cannot_go_offline_while_engaged(self):
		self.profile.is_online = True
		self.profile.save()
		self.engage()

		request = self.factory.put('/api/provider/online/', {'is_online': False}, format='json')
		force_authenticate(request, user=self.provider)
		response = ProviderOnlineView.as_view()(request)

		self.assertEqual(response.status_code, 409)
		self.profile.refresh_from_db()
		self.assertTrue(self.profile.is_online)

	@patch('services.lifecycle.request_lifecycle.lock_user')
	def test_offline_check_runs_under_provider_lock(self, mock_lock):
		self.profile.is_online = True
		self.profile.save()
		self.engage(status='accepted')

		with self.assertRaises(ProviderNotAvailableError):
			set_provider_online(self.profile, False)

		mock_lock.assert_called_once_with(self.provider.id)

	def test_clients_are_rejected(self):
		request = self.factory.put('/api/provider/online/', {'is_online': True}, format='json')
		force_authenticate(request, user=self.client_user)
		response = ProviderOnlineView.as_view()(request)

		self.assertEqual(response.status_code, 403)

	@patch('providers.services.publish_provider_location', return_value=0)
	def test_location_update(self, mock_publish):
		request = self.factory.post(
			'/api/provider/location/',
			{'latitude': '-23.561400', 'longitude': '-46.655900', 'address': 'Rua Augusta'},
			format='json'
		)
		force_authenticate(request, user=self.provider)
		response = ProviderLocationUpdateView.as_view()(request)

		self.assertEqual(response.status_code, 200)
		self.profile.refresh_from_db()
		self.assertEqual(self.profile.current_latitude, Decimal('-23.561400'))
		self.assertEqual(self.profile.current_address, 'Rua Augusta')
		mock_publish.assert_called_once()

	def test_out_of_range_location_is_rejected(self):
		request = self.factory.post(
			'/api/provider/location/',
			{'latitude': '95.000000', 'longitude': '-46.655900'},
			format='json'
		)
		force_authenticate(request, user=self.provider)
		response = ProviderLocationUpdateView.as_view()(request)

		self.assertEqual(response.status_code, 400)

	def test_update_services_offered(self):
		request = self.factory.put(
			'/api/provider/services/',
			{'services_offered': ['tire', 'locksmith', 'tire']},
			format='json'
		)
		force_authenticate(request, user=self.provider)
		response = ProviderServicesView.as_view()(request)

		self.assertEqual(response.status_code, 200)
		self.profile.refresh_from_db()
		self.assertEqual(self.profile.services_offered, ['tire', 'locksmith'])

	def test_current_request(self):
		service_request = self.engage()

		request = self.factory.get('/api/provider/current-request/')
		force_authenticate(request, user=self.provider)
		response = ProviderCurrentRequestView.as_view()(request)

		self.assertTrue(response.data['has_active_request'])
		self.assertEqual(response.data['request']['id'], service_request.id)


class DatabaseGeoIndexTests(TestCase):
	def setUp(self):
		self.index = DatabaseGeoIndex()
		self.origin = (Decimal('-23.550500'), Decimal('-46.633300'))

	def make_provider(self, username, lat, services=('towing',), radar_range_km=25, online=True):
		user = User.objects.create_user(username=username, password='pass1234', role='provider')
		ProviderProfile.objects.create(
			user=user,
			services_offered=list(services),
			radar_range_km=radar_range_km,
			is_online=online,
			current_latitude=Decimal(lat),
			current_longitude=Decimal('-46.633300')
		)
		return user

	def test_results_sorted_by_distance(self):
		far = self.make_provider('far', '-23.580000')
		near = self.make_provider('near', '-23.555000')

		matches = self.index.query('towing', self.origin, 10)

		self.assertEqual([m.provider_id for m in matches], [near.id, far.id])
		self.assertLess(matches[0].distance_km, matches[1].distance_km)

	def test_filters(self):
		excluded = self.make_provider('excluded', '-23.555000')
		self.make_provider('offline', '-23.555000', online=False)
		self.make_provider('locksmith', '-23.555000', services=('locksmith',))
		self.make_provider('short_range', '-23.600000', radar_range_km=3)
		self.make_provider('outside', '-23.700000')

		matches = self.index.query('towing', self.origin, 10, excluding=[excluded.id])

		self.assertEqual(matches, [])


class RedisGeoIndexTests(TestCase):
	def setUp(self):
		self.location_index = MagicMock()
		self.index = RedisGeoIndex(location_index=self.location_index)

	def test_excluded_and_out_of_range_entries_are_dropped(self):
		self.location_index.search.return_value = [
			IndexedProvider(provider_id=1, latitude=-23.55, longitude=-46.63, radar_range_km=25, distance_km=1.2),
			IndexedProvider(provider_id=2, latitude=-23.56, longitude=-46.63, radar_range_km=1, distance_km=2.5),
			IndexedProvider(provider_id=3, latitude=-23.57, longitude=-46.63, radar_range_km=None, distance_km=3.0),
		]

		matches = self.index.query('tire', (-23.55, -46.63), 5, excluding=[3])

		self.assertEqual([m.provider_id for m in matches], [1])
		self.location_index.search.assert_called_once_with(-23.55, -46.63, 5, service_type='tire')

	def test_redis_errors_surface_as_unavailable(self):
		self.location_index.search.side_effect = redis.ConnectionError('refused')

		with self.assertRaises(ExternalUnavailable):
			self.index.query('tire', (-23.55, -46.63), 5)
