from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class SelectedItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemId: str
    quantity: int


class ApplyRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    applicantName: str
    phoneNumber: str
    studentId: str
    accountHolderName: str
    accountNumber: str
    rentalDate: date
    returnDate: date
    items: List[SelectedItemDto] = []


class ApplicantIdentityDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    studentId: Optional[str] = None
    phoneNumber: Optional[str] = None


class UserEditRequest(ApplicantIdentityDto):
    rentalDate: date
    returnDate: date
    items: List[SelectedItemDto] = []


class AdminRentalPatch(BaseModel):
    """Fields an administrator may change. Anything else is rejected."""

    model_config = ConfigDict(extra="forbid")

    applicantName: Optional[str] = None
    phoneNumber: Optional[str] = None
    studentId: Optional[str] = None
    accountHolderName: Optional[str] = None
    accountNumber: Optional[str] = None
    rentalDate: Optional[date] = None
    returnDate: Optional[date] = None
    status: Optional[str] = None
    rentalStaff: Optional[str] = None
    returnStaff: Optional[str] = None
    actualReturnDate: Optional[date] = None
    depositRefunded: Optional[bool] = None
    items: Optional[List[SelectedItemDto]] = None


class AdminLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None
    password: Optional[str] = None
