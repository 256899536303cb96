"""
Realtime app for WebSocket communication around service requests.

This app provides:
- WebSocket consumers for request tracking and provider location streaming
- The change broadcaster (status changes fanned out with their sequence)
- The tracking feed (engaged provider position pushed to request_<id>)
- Redis GEO provider index used by the 'redis' geo backend
- Notification helpers for offers and request events
- JWT/session authentication middleware for WebSocket connections

Key Components:
    - geo.py: Redis GEO index of online provider positions
    - broadcast.py: status change broadcaster and tracking feed
    - consumers/: WebSocket consumers (request, provider)
    - notifications.py: offer fan-out and request event helpers

Usage:
    from realtime.consumers import RequestConsumer, ProviderConsumer
    from realtime.notifications import notify_provider_event, notify_client_event
    from realtime.broadcast import broadcast_request_change, publish_provider_location
    from realtime.geo import get_provider_location_index
"""
