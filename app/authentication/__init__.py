"""
Authentication application.

Provides the member identity the messaging core builds on: an email-based
User, a Profile with display name and avatar, and JWT token issuance for
REST and push-channel clients.

Usage:
    from authentication.models import User, Profile
"""
