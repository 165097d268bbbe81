from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class MessagesRequest(BaseModel):
    """
    Envelope around a /v1/messages body.

    Only the fields the router reads or rewrites are declared; everything
    else the client sent is kept as extra data and forwarded untouched.
    Apart from ``model`` the declared fields are loosely typed: the router
    only inspects them, and whatever shape the client sent is forwarded.
    """
    model_config = ConfigDict(extra="allow")

    model: str = ""
    messages: Optional[Any] = None
    system: Optional[Any] = None
    thinking: Optional[Any] = None
    metadata: Optional[Any] = None

    @property
    def thinking_type(self) -> Optional[str]:
        if isinstance(self.thinking, dict):
            return self.thinking.get("type")
        return None

    def retarget(self, model_name: str) -> None:
        self.model = model_name

    def enable_thinking(self) -> None:
        """Replace the generic "adaptive" mode with "enabled"."""
        if self.thinking_type == "adaptive":
            self.thinking = {**self.thinking, "type": "enabled"}

    def to_payload(self, drop_user_id: bool = False) -> Dict[str, Any]:
        """Serialize back to the wire shape, omitting fields the client never sent."""
        payload = self.model_dump(mode="json", exclude_unset=True)
        metadata = payload.get("metadata")
        if drop_user_id and isinstance(metadata, dict):
            metadata.pop("user_id", None)
        return payload
