"""Process-wide service singletons shared by the routers.

Routers read these as module attributes (``dependencies.guard``) so tests
can swap in fresh instances.
"""

from app.recording.live import LiveSessionRegistry
from app.services.session_guard import ActiveSessionGuard

guard = ActiveSessionGuard()
live_sessions = LiveSessionRegistry()
