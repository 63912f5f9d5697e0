"""Error taxonomy for request orchestration"""


class AIRouterError(Exception):
    """Base class for all orchestration errors"""


class BudgetExceededError(AIRouterError):
    """The organization's budget does not allow this request; no model was called"""

    def __init__(self, org_id: str, reason: str):
        self.org_id = org_id
        self.reason = reason
        super().__init__(f"Budget exceeded for organization {org_id}: {reason}")


class UnknownModelTierError(AIRouterError):
    """A forced or fallback model names a tier that is not in the registry"""

    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"Unknown model tier: {tier}")


class ModelInvocationError(AIRouterError):
    """A single model call failed or timed out"""

    def __init__(self, tier: str, message: str):
        self.tier = tier
        super().__init__(f"Model tier {tier} failed: {message}")


class ModelUnavailableError(AIRouterError):
    """Both the recommended tier and its fallback failed"""

    def __init__(self, primary_tier: str, fallback_tier: str, primary_error: str, fallback_error: str):
        self.primary_tier = primary_tier
        self.fallback_tier = fallback_tier
        super().__init__(
            f"Models unavailable. Primary ({primary_tier}): {primary_error}. "
            f"Fallback ({fallback_tier}): {fallback_error}"
        )


class SessionNotFoundError(AIRouterError):
    """No retrieval session exists with the given id"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Retrieval session not found: {session_id}")


class SessionClosedError(AIRouterError):
    """The retrieval session was already completed or expired"""

    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Retrieval session {session_id} is {status}")
