# backend/modules/settings/models/settings_models.py

"""
System-wide mutable settings, such as the service-fee rate.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship
from enum import Enum

from core.clock import utcnow
from core.database import Base
from core.mixins import TimestampMixin


class SettingKey(str, Enum):
    """Known system settings"""

    SERVICE_FEE_RATE = "SERVICE_FEE_RATE"


class SettingType(str, Enum):
    """Data types for settings"""

    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"


class SystemSetting(Base, TimestampMixin):
    __tablename__ = "system_settings"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), nullable=False, unique=True, index=True)
    value = Column(Text, nullable=False)
    value_type = Column(SQLEnum(SettingType), nullable=False, default=SettingType.STRING)
    description = Column(Text, nullable=True)
    modified_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    history = relationship(
        "SettingHistory", back_populates="setting", order_by="SettingHistory.id"
    )

    def __repr__(self):
        return f"<SystemSetting(key='{self.key}', value='{self.value}')>"


class SettingHistory(Base):
    """Every change to a system setting"""

    __tablename__ = "system_setting_history"

    id = Column(Integer, primary_key=True, index=True)
    setting_id = Column(Integer, ForeignKey("system_settings.id"), nullable=False, index=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=False)
    changed_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    changed_at = Column(DateTime, default=utcnow, nullable=False)

    setting = relationship("SystemSetting", back_populates="history")
