from voxagent.memory.capsule import StateCapsule, Tone
from voxagent.memory.conversation import BACKCHANNEL_MARKER, ConversationMemory, MessageEntry
from voxagent.memory.situation import SituationMessages
from voxagent.memory.updater import RuleBasedStateUpdater, StateUpdater

__all__ = [
    "BACKCHANNEL_MARKER",
    "ConversationMemory",
    "MessageEntry",
    "RuleBasedStateUpdater",
    "SituationMessages",
    "StateCapsule",
    "StateUpdater",
    "Tone",
]
