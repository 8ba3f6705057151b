# backend/modules/settings/services/settings_service.py

from decimal import Decimal, InvalidOperation
import logging

from core.auth_context import Actor
from core.config import settings
from core.error_handling import APIValidationError, AuthorizationError
from core.unit_of_work import UnitOfWork
from ..models.settings_models import SystemSetting, SettingHistory, SettingKey, SettingType

logger = logging.getLogger(__name__)


class SettingsService:
    """Reads and updates system-wide settings"""

    def __init__(self, uow: UnitOfWork):
        self.uow = uow
        self.db = uow.session

    def _get_setting(self, key: SettingKey) -> SystemSetting:
        return self.db.query(SystemSetting).filter(SystemSetting.key == key.value).first()

    def get_service_fee_rate(self) -> Decimal:
        """
        Current service-fee rate as a percent of the rental amount.

        Callers read this once per operation and pass the snapshot to the fee
        calculator.
        """
        setting = self._get_setting(SettingKey.SERVICE_FEE_RATE)
        if setting is None:
            return settings.default_service_fee_rate
        try:
            return Decimal(setting.value)
        except InvalidOperation:
            logger.error(f"Stored service fee rate '{setting.value}' is not a number, using default")
            return settings.default_service_fee_rate

    def set_service_fee_rate(self, actor: Actor, rate: Decimal) -> SystemSetting:
        if not actor.is_admin:
            raise AuthorizationError("Only admins can change the service fee rate")
        rate = Decimal(str(rate))
        if rate < 0 or rate > 100:
            raise APIValidationError(
                "Service fee rate must be between 0 and 100",
                {"rate": str(rate)},
            )

        try:
            setting = self._get_setting(SettingKey.SERVICE_FEE_RATE)
            old_value = None
            if setting is None:
                setting = SystemSetting(
                    key=SettingKey.SERVICE_FEE_RATE.value,
                    value=str(rate),
                    value_type=SettingType.DECIMAL,
                    description="Service fee, percent of the rental amount",
                    modified_by_id=actor.id,
                )
                self.db.add(setting)
                self.db.flush()
            else:
                old_value = setting.value
                setting.value = str(rate)
                setting.modified_by_id = actor.id

            self.db.add(
                SettingHistory(
                    setting_id=setting.id,
                    old_value=old_value,
                    new_value=str(rate),
                    changed_by_id=actor.id,
                )
            )
            self.uow.commit()
            logger.info(f"Service fee rate changed from {old_value} to {rate} by user {actor.id}")
            return setting

        except Exception as e:
            self.uow.rollback()
            logger.error(f"Error updating service fee rate: {str(e)}")
            raise
