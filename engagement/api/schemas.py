from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, Field


class ActivityRequest(BaseModel):
    userId: str = Field(min_length=1)
    # Epoch ms (or seconds) or ISO-8601; omitted means "now".
    timestamp: Optional[Union[int, str]] = None
    rawText: Optional[str] = None
    isGroup: bool = False
    jid: Optional[str] = None
    groupJid: Optional[str] = None
    locale: Optional[str] = None


class ActivityResponse(BaseModel):
    status: Literal["success", "error"] = "success"
    userId: str
    reactivated: bool
    previousState: Optional[str] = None
    state: str
    isFirstMessage: bool = False
    trigger: Optional[str] = None
    replyKey: Optional[str] = None
    reply: Optional[str] = None
    replyParams: Dict[str, Any] = Field(default_factory=dict)


class OptOutRequest(BaseModel):
    optOut: bool = True


class TransactionActivityRequest(BaseModel):
    timestamp: Optional[Union[int, str]] = None
