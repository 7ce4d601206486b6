"""
Trial Service Layer

One-per-client trial grant on the VPN panel.
"""

from app.services.trials.service import (
    activate_trial,
    get_trial_config,
    TrialConfig,
    TrialServiceError,
    TrialNotConfiguredError,
    TrialAlreadyUsedError,
)

__all__ = [
    "activate_trial",
    "get_trial_config",
    "TrialConfig",
    "TrialServiceError",
    "TrialNotConfiguredError",
    "TrialAlreadyUsedError",
]
