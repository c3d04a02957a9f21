from chatsync.schemas.message import ConversationKind, ConversationRef


class MembershipPermission:

    def __init__(self, groups) -> None:
        self._groups = groups

    async def can_send(self, ref: ConversationRef, user_id: str) -> bool:
        if ref.kind is ConversationKind.GROUP:
            return await self._groups.is_member(ref.target_id, user_id)
        return True
