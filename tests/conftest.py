"""Pytest configuration shared by every test package."""

from hypothesis import settings

# Genesis and topology properties build files on disk; wall-clock deadlines only add flakiness.
settings.register_profile("no_deadline", deadline=None)
settings.load_profile("no_deadline")
