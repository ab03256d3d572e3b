from sqlalchemy import Column, Date, DateTime, Integer, String

from loan_tracker.db.base import Base


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(String(36), primary_key=True)
    Name = Column(String(100), nullable=False)
    Category = Column(String(50), nullable=False, index=True)
    Description = Column(String(500), nullable=False, default="")
    TotalQuantity = Column(Integer, nullable=False, default=0)
    AvailableQuantity = Column(Integer, nullable=False, default=0)
    PurchaseDate = Column(Date, nullable=False)
    UsefulLife = Column(Integer)
    Version = Column(Integer, nullable=False, default=1)
    CreatedAt = Column(DateTime(timezone=True), nullable=False)
    UpdatedAt = Column(DateTime(timezone=True), nullable=False)


class Loan(Base):
    __tablename__ = "Loans"

    LoanID = Column(String(36), primary_key=True)
    # No foreign key: returned loans stay as history after the equipment is deleted.
    EquipmentID = Column(String(36), nullable=False, index=True)
    UserID = Column(String(100), nullable=False, index=True)
    BorrowedAt = Column(DateTime(timezone=True), nullable=False)
    ReturnedAt = Column(DateTime(timezone=True))
    Status = Column(String(20), nullable=False, default="active")
    Version = Column(Integer, nullable=False, default=1)


class User(Base):
    __tablename__ = "Users"

    UserID = Column(String(100), primary_key=True)
    Name = Column(String(255), nullable=False)
    Email = Column(String(255), nullable=False, index=True)
    Role = Column(String(20), nullable=False, default="user")
