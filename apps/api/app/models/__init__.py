"""Expose ORM models."""
from .business_profile import BusinessProfile, ProfileSource
from .project import FunnelProject
from .transcript import CallStatus, VapiTranscript

__all__ = [
    "BusinessProfile",
    "CallStatus",
    "FunnelProject",
    "ProfileSource",
    "VapiTranscript",
]
