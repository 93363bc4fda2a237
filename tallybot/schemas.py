from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TelegramChat(BaseModel):
    id: int
    type: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class TelegramPhotoSize(BaseModel):
    file_id: str
    file_unique_id: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    file_size: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class TelegramDocument(BaseModel):
    file_id: str
    file_unique_id: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class TelegramMessage(BaseModel):
    message_id: int
    chat: TelegramChat
    date: Optional[int] = None
    text: Optional[str] = None
    caption: Optional[str] = None
    photo: List[TelegramPhotoSize] = Field(default_factory=list)
    document: Optional[TelegramDocument] = None

    model_config = ConfigDict(extra="allow")


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None

    model_config = ConfigDict(extra="allow")


class StockRowSchema(BaseModel):
    productId: int
    name: str
    store: Optional[str] = None
    baseQty: float
    snapshotQty: float
    purchasedQty: float
    stockActual: float


class StockResponse(BaseModel):
    snapshotId: int
    items: List[StockRowSchema]


class SuggestedPurchaseSchema(BaseModel):
    productId: int
    name: str
    store: Optional[str] = None
    baseQty: float
    stockActual: float
    shortfall: float


class StoreGroupSchema(BaseModel):
    store: str
    items: List[SuggestedPurchaseSchema]


class SuggestedPurchasesResponse(BaseModel):
    snapshotId: int
    items: List[SuggestedPurchaseSchema] = Field(default_factory=list)
    stores: Optional[List[StoreGroupSchema]] = None


class BaseTargetRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    qty: float = Field(ge=0)


class BaseTargetResponse(BaseModel):
    productId: int
    name: str
    baseQty: float
