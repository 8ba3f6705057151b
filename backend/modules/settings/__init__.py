# backend/modules/settings/__init__.py

"""
Platform-wide settings with change history.
"""

from .models.settings_models import SettingHistory, SettingKey, SettingType, SystemSetting

__all__ = [
    "SettingHistory",
    "SettingKey",
    "SettingType",
    "SystemSetting",
]
