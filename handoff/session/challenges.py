# handoff/session/challenges.py
import logging
from typing import Optional

from handoff.core.clock import Clock, system_clock
from handoff.core.config import Policy
from handoff.core.errors import ChallengeNotFound
from handoff.core.ids import new_id, new_nonce
from handoff.core.types import Challenge
from handoff.identity import IdentityRegistry, validate_actor_id
from handoff.session.manager import SessionManager
from handoff.storage import StorageBackend

logger = logging.getLogger(__name__)


class ChallengeIssuer:
    """Issues single-use nonces for a (session, actor) pair."""

    def __init__(
        self,
        store: StorageBackend,
        sessions: SessionManager,
        identities: IdentityRegistry,
        policy: Optional[Policy] = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.sessions = sessions
        self.identities = identities
        self.policy = policy or Policy()
        self.clock = clock

    def issue(self, session_id: str, actor_id: str) -> Challenge:
        """
        Raises SessionNotFound, SessionExpired, SessionNotActive or ActorNotRegistered.
        Earlier unused challenges for the pair stay valid; the verifier only ever
        considers the latest one.
        """
        validate_actor_id(actor_id)
        self.sessions.require_usable(session_id)
        self.identities.require_active(actor_id)

        created_at = self.clock()
        challenge = Challenge(
            id=new_id("ch"),
            session_id=session_id,
            actor_id=actor_id,
            nonce=new_nonce(),
            created_at=created_at,
            expires_at=created_at + self.policy.challenge_ttl * 1000,
            used=False,
        )
        self.store.create_challenge(challenge)
        logger.info("Challenge %s issued for session %s to actor %s", challenge.id, session_id, actor_id)
        return challenge

    def latest_unused(self, session_id: str, actor_id: str) -> Challenge:
        challenge = self.store.get_latest_unused_challenge(session_id, actor_id)
        if challenge is None:
            raise ChallengeNotFound(f"No unused challenge for actor '{actor_id}' in session '{session_id}'")
        return challenge
