"""Application services."""

from .settings import SecretVault, Settings, SettingsStore, apply_overrides, redact_secret, redact_settings

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "apply_overrides",
    "redact_secret",
    "redact_settings",
]
