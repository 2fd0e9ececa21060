from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional

# Server -> client
ME = "me"
CALL_ACCEPTED = "callAccepted"
CALL_ENDED = "callEnded"
USER_UNAVAILABLE = "userUnavailable"

# Both directions
CALL_USER = "callUser"

# Client -> server
ANSWER_CALL = "answerCall"


class Envelope(BaseModel):
    event: str
    data: Any = None


class CallUserRequest(BaseModel):
    user_to_call: str = Field(..., alias="userToCall")
    signal_data: Any = Field(..., alias="signalData")
    from_user: Optional[str] = Field(None, alias="from")  # informational; the relay stamps the real origin
    name: str = ""

    model_config = ConfigDict(populate_by_name=True)


class IncomingCall(BaseModel):
    signal: Any
    from_user: str = Field(..., alias="from")
    name: str = ""

    model_config = ConfigDict(populate_by_name=True)


class AnswerCallRequest(BaseModel):
    to: str
    signal: Any


class PeerNotice(BaseModel):
    """Payload of callEnded and userUnavailable."""
    identity: Optional[str] = None
