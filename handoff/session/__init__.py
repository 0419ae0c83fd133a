from .manager import SessionManager
from .challenges import ChallengeIssuer

__all__ = ["SessionManager", "ChallengeIssuer"]
