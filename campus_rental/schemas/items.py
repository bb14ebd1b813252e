from typing import Optional

from pydantic import BaseModel, ConfigDict


class ItemCreateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    initialStock: Optional[int] = None
    price: Optional[int] = None
    unit: Optional[str] = None
    description: Optional[str] = None
    imageUrl: Optional[str] = None


class ItemUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    name: Optional[str] = None
    initialStock: Optional[int] = None
    currentStock: Optional[int] = None
    price: Optional[int] = None
    unit: Optional[str] = None
    description: Optional[str] = None
    imageUrl: Optional[str] = None
