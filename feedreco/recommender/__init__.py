# feedreco/recommender/__init__.py
"""
Recommendation module: user interaction profile and the hybrid recommendation engine.
"""

from .engine import RecommendationEngine
from .profile import UserInteractionProfile, build_interaction_profile

__all__ = [
    "RecommendationEngine",
    "UserInteractionProfile",
    "build_interaction_profile",
]
