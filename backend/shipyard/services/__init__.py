from shipyard.services.prompt_service import PromptService
from shipyard.services.conversation_cache import ConversationCache, ConversationSnapshot
from shipyard.services.conversation_resolver import ConversationResolver, ResolvedConversation

# Pipeline services for POST /message
from shipyard.services.usage_guardrail import UsageGuardrail
from shipyard.services.active_sessions import ActiveSessionService, ActiveSessionSweeper
from shipyard.services.agent_client import AgentClient
from shipyard.services.github_client import GitHubClient
from shipyard.services.deployment import DeploymentTrigger
from shipyard.services.message_orchestrator import MessageOrchestrator

__all__ = [
    # Conversation
    "PromptService",
    "ConversationCache",
    "ConversationSnapshot",
    "ConversationResolver",
    "ResolvedConversation",
    # Pipeline
    "UsageGuardrail",
    "ActiveSessionService",
    "ActiveSessionSweeper",
    "AgentClient",
    "GitHubClient",
    "DeploymentTrigger",
    "MessageOrchestrator",
]
