"""Comms Engine: multi-tenant email, SMS, WhatsApp and in-app notification delivery."""

__version__ = "1.0.0"
