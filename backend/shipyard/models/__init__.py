# Re-export all models for convenient imports
from shipyard.models.application import Application, DeployStatus, generate_uuid
from shipyard.models.prompt import Prompt, PromptKind
from shipyard.models.active_session import ActiveSession
from shipyard.models.message_limit import CustomMessageLimit

__all__ = [
    "Application",
    "DeployStatus",
    "generate_uuid",
    "Prompt",
    "PromptKind",
    "ActiveSession",
    "CustomMessageLimit",
]
