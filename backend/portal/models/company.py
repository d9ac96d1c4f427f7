from sqlalchemy import JSON, Boolean, Column, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship
from portal.database import Base


class Company(Base):
    __tablename__ = "companies"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)
    reference_no = Column(Integer)
    code = Column(Text)
    parent_id = Column(Text, ForeignKey("companies.id", ondelete="SET NULL"))
    is_active = Column(Boolean, nullable=False, default=True)
    # EDI customers receive documents machine-to-machine; nobody reads notices.
    machine_integrated = Column(Boolean, nullable=False, default=False)
    contact_emails = Column(JSON, nullable=False, default=list)
    created_at = Column(Text, nullable=False)

    parent = relationship("Company", remote_side=[id], back_populates="children")
    children = relationship("Company", back_populates="parent")
