"""Isolated configuration profiles."""

from regtestenv.profiles.manager import Profile, ProfileManager, ProfilesIndex, scope_config

__all__ = [
    "Profile",
    "ProfileManager",
    "ProfilesIndex",
    "scope_config",
]
