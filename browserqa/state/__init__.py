"""Team state records and the persistence boundary."""

from .models import (
    Project,
    ProfileStatus,
    ProviderProfile,
    ProviderProfiles,
    QAState,
    UserAccount,
)
from .store import InMemoryStateStore, JsonFileStateStore, StateStore

__all__ = [
    "Project",
    "ProfileStatus",
    "ProviderProfile",
    "ProviderProfiles",
    "QAState",
    "UserAccount",
    "InMemoryStateStore",
    "JsonFileStateStore",
    "StateStore",
]
