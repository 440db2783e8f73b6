from .behavioral_profile import BehavioralProfileModel
from .intervention import InterventionModel
from .behavioral_win import BehavioralWinModel
from .state_transition import StateTransitionModel
from .experiment_event import ExperimentEventModel

__all__ = [
    "BehavioralProfileModel",
    "InterventionModel",
    "BehavioralWinModel",
    "StateTransitionModel",
    "ExperimentEventModel",
]
