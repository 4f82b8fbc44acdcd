"""
Tests for the main application module.

This package contains unit and integration tests for:
- Models (Order transitions, Payment/Rental constraints, OrderEvent)
- Payment gateway client and signature verification
- Order and rental services
- Notification intents
"""
