"""Engine domain — retrieval, context composition, generation and actions."""

from nocturne.engine.actions import Action
from nocturne.engine.actions import ActionCache
from nocturne.engine.actions import ActionContext
from nocturne.engine.actions import ActionMatcher
from nocturne.engine.actions import ActionResponse
from nocturne.engine.actions import ExactActionMatcher
from nocturne.engine.actions import FuzzyActionMatcher
from nocturne.engine.actions import InMemoryActionCache
from nocturne.engine.actions import RedisActionCache
from nocturne.engine.builtin_actions import default_actions
from nocturne.engine.composer import ContextBundle
from nocturne.engine.composer import ContextComposer
from nocturne.engine.dispatcher import ActionDispatcher
from nocturne.engine.dispatcher import DispatchResult
from nocturne.engine.dispatcher import DispatchState
from nocturne.engine.generation import build_generation_client
from nocturne.engine.generation import DraftResponse
from nocturne.engine.generation import GenerationClient
from nocturne.engine.generation import OpenAICompatibleGenerationClient
from nocturne.engine.generation import StaticGenerationClient
from nocturne.engine.providers import NO_CONTRIBUTION
from nocturne.engine.providers import Provider
from nocturne.engine.providers import StaticTextProvider
from nocturne.engine.providers import TimeProvider
from nocturne.engine.providers import UserProfileProvider
from nocturne.engine.retrieval import FragmentRotation
from nocturne.engine.retrieval import RetrievalEngine
from nocturne.engine.retrieval import RetrievalScorer
from nocturne.engine.retrieval import RetrievedFragment
from nocturne.engine.retrieval import WeightedRelevanceScorer

__all__ = [
    "Action",
    "ActionCache",
    "ActionContext",
    "ActionDispatcher",
    "ActionMatcher",
    "ActionResponse",
    "ContextBundle",
    "ContextComposer",
    "DispatchResult",
    "DispatchState",
    "DraftResponse",
    "ExactActionMatcher",
    "FragmentRotation",
    "FuzzyActionMatcher",
    "GenerationClient",
    "InMemoryActionCache",
    "NO_CONTRIBUTION",
    "OpenAICompatibleGenerationClient",
    "Provider",
    "RedisActionCache",
    "RetrievalEngine",
    "RetrievalScorer",
    "RetrievedFragment",
    "StaticGenerationClient",
    "StaticTextProvider",
    "TimeProvider",
    "UserProfileProvider",
    "WeightedRelevanceScorer",
    "build_generation_client",
    "default_actions",
]
