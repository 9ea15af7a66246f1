"""Contact model - customer on the other side of a ticket"""

from sqlalchemy import Column, String, DateTime

from deskflow.database import Base, new_uuid, utcnow


class Contact(Base):
    """Customer contact (read-only for the automation engine)"""

    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(255), nullable=False)
    phone_number = Column(String(50), nullable=True, index=True)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Contact(id='{self.id}', name='{self.name}')>"
