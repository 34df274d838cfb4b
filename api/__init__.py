"""REST API for marketplace orders.

This module provides HTTP endpoints for:
- Receiving payment gateway webhooks
- Carrier-delivery and buyer-pickup fulfillment steps
- Refunds, disputes and dispute resolution
- Administrative flags and notes
- System health monitoring
"""
from .main import create_app
from .services import Services, build_services

# Application used by ``uvicorn api:app``; services are built on startup
app = create_app()

__all__ = ['Services', 'app', 'build_services', 'create_app']
