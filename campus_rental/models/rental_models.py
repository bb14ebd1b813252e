from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class Item(Base):
    __tablename__ = "Items"
    __table_args__ = (
        CheckConstraint("currentStock >= 0", name="ck_items_current_stock_non_negative"),
        CheckConstraint("currentStock <= initialStock", name="ck_items_current_stock_within_initial"),
    )

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    initialStock = Column(Integer, nullable=False)
    currentStock = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)
    description = Column(Text)
    imageUrl = Column(String(500))
    unit = Column(String(50), nullable=False)
    createdDate = Column(DateTime, server_default=func.now())
    updatedDate = Column(DateTime, server_default=func.now())


class RentalApplication(Base):
    __tablename__ = "RentalApplications"
    __table_args__ = (
        CheckConstraint("status IN ('Pending', 'Rented', 'Returned')", name="ck_rental_applications_status"),
    )

    id = Column(String(64), primary_key=True)
    applicantName = Column(String(100), nullable=False)
    phoneNumber = Column(String(30), nullable=False)
    studentId = Column(String(30), nullable=False)
    accountHolderName = Column(String(100), nullable=False)
    accountNumber = Column(String(60), nullable=False)
    rentalDate = Column(Date, nullable=False)
    returnDate = Column(Date, nullable=False)
    totalItemCost = Column(Integer, nullable=False, default=0)
    deposit = Column(Integer, nullable=False, default=0)
    totalAmount = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False)
    applicationDate = Column(Date, nullable=False)
    rentalStaff = Column(String(100))
    returnStaff = Column(String(100))
    actualReturnDate = Column(Date)
    depositRefunded = Column(Boolean, nullable=False, default=False)
    createdDate = Column(DateTime, server_default=func.now())
    updatedDate = Column(DateTime, server_default=func.now())

    ApplicationItems = relationship(
        "RentalApplicationItem",
        back_populates="Application",
        cascade="all, delete-orphan",
        order_by="RentalApplicationItem.itemId",
    )


class RentalApplicationItem(Base):
    __tablename__ = "RentalApplicationItems"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_rental_application_items_quantity_positive"),
    )

    rentalApplicationId = Column(
        String(64),
        ForeignKey("RentalApplications.id", ondelete="CASCADE"),
        primary_key=True,
    )
    # No FK to Items: returned applications keep their lines after an item is deleted.
    itemId = Column(String(64), primary_key=True, index=True)
    quantity = Column(Integer, nullable=False)

    Application = relationship("RentalApplication", back_populates="ApplicationItems")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True, autoincrement=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(String(64), nullable=False)
    Action = Column(String(50), nullable=False)
    Details = Column(Text)
    UserID = Column(String(100))
    CreatedAt = Column(DateTime, server_default=func.now())
