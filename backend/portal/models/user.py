from sqlalchemy import Boolean, Column, ForeignKey, Table, Text
from sqlalchemy.orm import relationship
from portal.database import Base

user_companies = Table(
    "user_companies",
    Base.metadata,
    Column("user_id", Text, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("company_id", Text, ForeignKey("companies.id", ondelete="CASCADE"), primary_key=True),
)

PRIVILEGED_ROLES = {"global_admin", "administrator"}
STAFF_ROLES = PRIVILEGED_ROLES | {"manager", "staff"}


class User(Base):
    __tablename__ = "users"

    id = Column(Text, primary_key=True)
    email = Column(Text, nullable=False, unique=True)
    name = Column(Text)
    role = Column(Text, nullable=False, default="external_user")
    all_companies = Column(Boolean, nullable=False, default=False)
    created_at = Column(Text, nullable=False)

    companies = relationship("Company", secondary=user_companies)

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES
