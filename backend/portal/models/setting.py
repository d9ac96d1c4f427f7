from sqlalchemy import Column, Text
from portal.database import Base


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(Text, primary_key=True)
    value = Column(Text)
    updated_at = Column(Text, nullable=False)
