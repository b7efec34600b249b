# models.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import MalformedBlob

MessageType = Literal["text", "payment", "payment_request"]
Token = Literal["WLD", "USDC"]
PaymentStatus = Literal["pending", "success", "failed"]
RequestStatus = Literal["pending", "accepted", "declined"]

UNAVAILABLE_CONTENT = "[Message content unavailable - Blob ID: {blob_id}]"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


class Message(BaseModel):
    """
    One unit of conversation content, stored as exactly one blob.

    Messages are immutable: a status change on a payment request is a new
    message whose `replyTo` points at the original id.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    conversationId: str
    senderId: str
    content: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    messageType: MessageType = "text"

    # payment payload
    paymentAmount: Optional[float] = None
    paymentToken: Optional[Token] = None
    paymentReference: Optional[str] = None
    paymentStatus: Optional[PaymentStatus] = None
    recipientAddress: Optional[str] = None

    # money-request payload
    requestId: Optional[str] = None
    requestStatus: Optional[RequestStatus] = None
    description: Optional[str] = None

    replyTo: Optional[str] = None

    # filled in on load only; never part of the stored blob
    blobId: Optional[str] = Field(default=None, exclude=True)
    unavailable: bool = Field(default=False, exclude=True)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @classmethod
    def text(cls, conversation_id: str, sender_id: str, content: str, **kw) -> "Message":
        return cls(conversationId=conversation_id, senderId=sender_id, content=content, messageType="text", **kw)

    @classmethod
    def payment(cls, conversation_id: str, sender_id: str, amount: float, token: str,
                recipient: str, reference: Optional[str] = None, content: str = "", **kw) -> "Message":
        return cls(
            conversationId=conversation_id,
            senderId=sender_id,
            content=content or f"Sent {amount} {token}",
            messageType="payment",
            paymentAmount=amount,
            paymentToken=token,
            recipientAddress=recipient,
            paymentReference=reference,
            paymentStatus="pending",
            **kw,
        )

    @classmethod
    def payment_request(cls, conversation_id: str, sender_id: str, amount: float, token: str,
                        description: Optional[str] = None, content: str = "", **kw) -> "Message":
        request_id = kw.pop("requestId", None) or new_message_id()
        return cls(
            conversationId=conversation_id,
            senderId=sender_id,
            content=content or f"Requested {amount} {token}",
            messageType="payment_request",
            paymentAmount=amount,
            paymentToken=token,
            requestId=request_id,
            requestStatus="pending",
            description=description,
            **kw,
        )


def respond_to_request(original: Message, status: str, sender_id: str,
                       timestamp: Optional[datetime] = None) -> Message:
    """Build the follow-up message that accepts or declines a payment request."""
    if original.messageType != "payment_request":
        raise ValueError(f"message {original.id} is not a payment request")
    if status not in ("accepted", "declined"):
        raise ValueError(f"invalid request status: {status}")
    return Message(
        conversationId=original.conversationId,
        senderId=sender_id,
        content=f"Request {status}",
        timestamp=timestamp or utcnow(),
        messageType="payment_request",
        paymentAmount=original.paymentAmount,
        paymentToken=original.paymentToken,
        requestId=original.requestId,
        requestStatus=status,
        replyTo=original.id,
    )


class BlobRef(BaseModel):
    blobId: str
    size: int
    owner: str
    timestamp: datetime = Field(default_factory=utcnow)
    objectId: Optional[str] = None
    txDigest: Optional[str] = None
    status: Literal["newlyCreated", "alreadyCertified", "unknown"] = "unknown"


class MessageRecord(BaseModel):
    """Ledger-indexed metadata for one message."""

    blobId: str
    conversationId: str = ""
    senderId: str = ""
    # kept as a plain string so an unexpected value on chain cannot fail a read
    messageType: str = "text"
    timestamp: datetime
    objectId: str = ""
    txDigest: str = ""

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class ConversationSummary(BaseModel):
    id: str
    participants: List[str]
    messageCount: int
    createdAt: datetime
    updatedAt: datetime
    unreadCount: int = 0


class SendResult(BaseModel):
    blobRef: BlobRef
    txRef: str
    record: MessageRecord


class SignerResult(BaseModel):
    status: Literal["success", "error"]
    txId: Optional[str] = None
    errorCode: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


# -------------------- blob codec --------------------
def encode_message(message: Message) -> bytes:
    return message.model_dump_json(exclude_none=True).encode("utf-8")


def decode_message(data: bytes) -> Message:
    try:
        return Message.model_validate_json(data)
    except (ValidationError, ValueError) as exc:
        raise MalformedBlob(str(exc)) from exc


def fallback_message(record: MessageRecord) -> Message:
    """Stand-in for a record whose blob could not be resolved. Never persisted."""
    message_type = record.messageType if record.messageType in ("text", "payment", "payment_request") else "text"
    return Message(
        id=record.blobId,
        conversationId=record.conversationId,
        senderId=record.senderId,
        content=UNAVAILABLE_CONTENT.format(blob_id=record.blobId),
        timestamp=record.timestamp,
        messageType=message_type,
        blobId=record.blobId,
        unavailable=True,
    )


# -------------------- request bodies --------------------
class SendMessage(BaseModel):
    message: Message
    sender: str


class ReindexMessage(BaseModel):
    record: MessageRecord
    sender: str
