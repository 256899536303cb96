"""
Services package - Business logic layer.

This package contains all business logic services that operate on Django models
but are decoupled from the HTTP/WebSocket layer.

Modules:
    - lifecycle: Service request state machine and lifecycle operations
    - matching: Provider proximity queries and progressive radius search
    - negotiation: Turn-based price negotiation and request chat
    - payments: Payment gateway adapter and settlement coordination
"""
