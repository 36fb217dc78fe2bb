"""guardchat -- policy-filtered chat gateway for a local inference server.

Every turn passes a declarative content policy on the way in and on the
way out, and streaming turns are kept alive with heartbeats while the model
thinks.

Public API::

    from guardchat import ChatService, Settings
    from guardchat.rules import RuleEngine, load_rules
    from guardchat.llm import InferenceClient
"""

__version__ = "0.1.0"

from guardchat.config import Settings
from guardchat.service import ChatService

__all__ = ["ChatService", "Settings"]
