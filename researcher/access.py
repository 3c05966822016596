"""Access boundary computation for a research invocation.

The boundary depends on where the assistant was invoked, not on everything
the invoking user could see: a private channel only exposes itself plus public
content, a DM exposes what all participants share, and only a private
notebook exposes the invoking user's full access.
"""

from typing import Any, List, Optional

import structlog

from researcher.schemas.access_spec import (
    AccessSpec,
    FullUserAccess,
    PublicOnly,
    PublicPlusConversation,
    UserUnion,
)
from researcher.schemas.models import Conversation, ConversationKinds
from researcher.stores import ConversationStore

logger = structlog.get_logger(__name__)


class AccessSpecResolver:
    """Maps an invocation conversation to its ``AccessSpec``.

    Read-only. Missing data never raises; it resolves toward the most
    restrictive spec.
    """

    def __init__(self, conversations: ConversationStore):
        self.conversations = conversations

    async def resolve(self, db: Any, conversation: Conversation, invoking_user_id: str) -> AccessSpec:
        """Compute the access spec for ``conversation``.

        Threads are resolved through their root conversation. An orphaned
        thread (root missing) is limited to public content.
        """
        target = conversation
        if conversation.is_thread:
            root = await self._find_root(db, conversation)
            if root is None:
                logger.warning(
                    "Thread root not found, restricting to public content",
                    conversation_id=conversation.id,
                    root_conversation_id=conversation.root_conversation_id,
                )
                return PublicOnly()
            target = root

        return await self._resolve_non_thread(db, target, invoking_user_id)

    async def _find_root(self, db: Any, thread: Conversation) -> Optional[Conversation]:
        if not thread.root_conversation_id:
            return None
        root = await self.conversations.find_by_id(db, thread.root_conversation_id)
        # A thread whose root is itself a thread is malformed; treat as orphaned.
        if root is None or root.is_thread:
            return None
        return root

    async def _resolve_non_thread(self, db: Any, conversation: Conversation, invoking_user_id: str) -> AccessSpec:
        if conversation.kind == ConversationKinds.NOTEBOOK:
            if conversation.is_public:
                return PublicOnly()
            return FullUserAccess(user_id=invoking_user_id)

        if conversation.kind == ConversationKinds.CHANNEL:
            if conversation.is_public:
                return PublicOnly()
            return PublicPlusConversation(conversation_id=conversation.id)

        if conversation.kind == ConversationKinds.DM:
            participant_ids = await self.conversations.list_participant_ids(db, conversation.id)
            return UserUnion(user_ids=_unique(participant_ids))

        logger.info(
            "Unknown conversation kind, restricting to public content",
            conversation_id=conversation.id,
            kind=conversation.kind,
        )
        return PublicOnly()


def effective_access_spec(
    conversation: Conversation,
    resolved: AccessSpec,
    participant_ids: Optional[List[str]],
) -> AccessSpec:
    """Apply caller-supplied DM participants over the resolved spec.

    Only a direct DM takes the participants the caller passed in. A thread
    under a DM keeps the union resolved from the DM itself.
    """
    if conversation.kind == ConversationKinds.DM and participant_ids:
        return UserUnion(user_ids=_unique(participant_ids))
    return resolved


def _unique(ids: List[str]) -> List[str]:
    seen = set()
    ordered = []
    for item in ids:
        if item in seen:
            continue
        seen.add(item)
        ordered.append(item)
    return ordered
