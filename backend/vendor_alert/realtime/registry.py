"""
Connection registry
Maps authenticated users to live WebSocket connections and back.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from vendor_alert.models.user import ROLE_VENDOR


@dataclass
class ConnectedUser:
    id: int
    username: Optional[str]
    email: str
    role: str
    avatar_url: Optional[str] = None

    @classmethod
    def from_user(cls, user) -> "ConnectedUser":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            avatar_url=user.avatar_url,
        )

    @property
    def is_vendor(self) -> bool:
        return self.role == ROLE_VENDOR

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "avatar_url": self.avatar_url,
        }


class ConnectionRegistry:
    """
    Two indexes: user id -> latest connection id, connection id -> user.

    A user reconnecting replaces the user index entry; the older connection
    keeps its own entry until it disconnects.
    """

    def __init__(self):
        self._by_user: Dict[int, str] = {}
        self._by_connection: Dict[str, ConnectedUser] = {}

    def register(self, connection_id: str, user: ConnectedUser) -> None:
        previous = self._by_connection.get(connection_id)
        if previous is not None and previous.id != user.id:
            self.unregister(connection_id)

        self._by_connection[connection_id] = user
        self._by_user[user.id] = connection_id

    def unregister(self, connection_id: str) -> Optional[ConnectedUser]:
        user = self._by_connection.pop(connection_id, None)
        if user is not None and self._by_user.get(user.id) == connection_id:
            del self._by_user[user.id]
        return user

    def lookup_by_user(self, user_id: int) -> Optional[str]:
        return self._by_user.get(user_id)

    def lookup_by_connection(self, connection_id: str) -> Optional[ConnectedUser]:
        return self._by_connection.get(connection_id)

    def online_user_ids(self) -> set:
        return set(self._by_user)

    def __len__(self) -> int:
        return len(self._by_connection)
