"""
Models package
Session and event services used by the HTTP layer
"""
from .event_broadcaster import EventBroadcaster
from .unlock_service import BackendUnavailable, UnlockService

__all__ = ['BackendUnavailable', 'EventBroadcaster', 'UnlockService']
