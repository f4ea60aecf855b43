import json
import logging
import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from marketplace.models import (
    FeeSettings,
    FeeSettingsUpdateRequest,
    Principal,
    PublicFeeSettings,
)
from marketplace.services.database import Database, database, new_id, now_iso
from marketplace.services.errors import (
    MarketplaceAuthorizationError,
    MarketplaceValidationError,
)

logger = logging.getLogger(__name__)

FIELD_BOUNDS: Dict[str, Tuple[Decimal, Decimal]] = {
    "platform_fee_percentage": (Decimal("0"), Decimal("50")),
    "processing_fee_percentage": (Decimal("0"), Decimal("10")),
    "fixed_processing_fee": (Decimal("0"), Decimal("5")),
    "provider_commission_percentage": (Decimal("50"), Decimal("100")),
    "inspector_commission_percentage": (Decimal("50"), Decimal("100")),
    "minimum_withdrawal_amount": (Decimal("1"), Decimal("100")),
    "withdrawal_processing_days": (Decimal("1"), Decimal("30")),
}

# (percentage bounds, fixed bounds) per payout method
METHOD_FEE_BOUNDS: Dict[str, Tuple[Tuple[Decimal, Decimal], Tuple[Decimal, Decimal]]] = {
    "bank_transfer": ((Decimal("0"), Decimal("5")), (Decimal("0"), Decimal("10"))),
    "paypal": ((Decimal("0"), Decimal("5")), (Decimal("0"), Decimal("10"))),
    "stripe": ((Decimal("0"), Decimal("5")), (Decimal("0"), Decimal("10"))),
    "crypto": ((Decimal("0"), Decimal("10")), (Decimal("0"), Decimal("50"))),
}


def _check_bounds(label: str, value: Any, bounds: Tuple[Decimal, Decimal]) -> None:
    number = Decimal(str(value))
    low, high = bounds
    if not number.is_finite() or number < low or number > high:
        raise MarketplaceValidationError(f"{label} must be between {low} and {high}")


def validate_settings(settings: FeeSettings) -> None:
    for field, bounds in FIELD_BOUNDS.items():
        _check_bounds(field, getattr(settings, field), bounds)
    for method, fees in settings.withdrawal_fees.items():
        if method not in METHOD_FEE_BOUNDS:
            raise MarketplaceValidationError(f"Invalid withdrawal method: {method}")
        percentage_bounds, fixed_bounds = METHOD_FEE_BOUNDS[method]
        _check_bounds(f"Withdrawal fee percentage for {method}", fees.percentage, percentage_bounds)
        _check_bounds(f"Fixed withdrawal fee for {method}", fees.fixed, fixed_bounds)


def _require_admin(principal: Principal, action: str) -> None:
    if principal.role != "admin":
        raise MarketplaceAuthorizationError(f"Only admins can {action}")


@dataclass
class SettingsStore:
    """Versioned fee configuration with exactly one active snapshot."""

    db: Database

    def _settings_from_row(self, row: sqlite3.Row) -> FeeSettings:
        payload = json.loads(row["settings_json"])
        payload["version"] = int(row["version"])
        payload["updated_by"] = row["created_by"]
        payload["created_at"] = row["created_at"]
        return FeeSettings.model_validate(payload)

    def _insert_version(self, conn: sqlite3.Connection, settings: FeeSettings, actor_id: Optional[str]) -> FeeSettings:
        row = conn.execute("SELECT COALESCE(MAX(version), 0) AS version FROM admin_settings").fetchone()
        version = int(row["version"]) + 1
        created_at = now_iso()
        payload = settings.model_dump(mode="json", exclude={"version", "updated_by", "created_at"})
        conn.execute("UPDATE admin_settings SET is_active = 0 WHERE is_active = 1")
        conn.execute(
            """
            INSERT INTO admin_settings (id, version, settings_json, is_active, created_by, created_at)
            VALUES (?, ?, ?, 1, ?, ?)
            """,
            (new_id("set"), version, json.dumps(payload), actor_id, created_at),
        )
        return settings.model_copy(update={"version": version, "updated_by": actor_id, "created_at": created_at})

    def active_snapshot(self, conn: sqlite3.Connection) -> FeeSettings:
        """Active settings read inside the caller's transaction, created with defaults on first use."""
        row = conn.execute("SELECT * FROM admin_settings WHERE is_active = 1").fetchone()
        if row:
            return self._settings_from_row(row)
        logger.info("No active fee settings found; creating defaults")
        return self._insert_version(conn, FeeSettings(), actor_id=None)

    def get_active(self) -> FeeSettings:
        with self.db.transaction() as conn:
            return self.active_snapshot(conn)

    def get_for_admin(self, principal: Principal) -> FeeSettings:
        _require_admin(principal, "access admin settings")
        return self.get_active()

    def get_public(self) -> PublicFeeSettings:
        settings = self.get_active()
        return PublicFeeSettings(
            platform_fee_percentage=settings.platform_fee_percentage,
            processing_fee_percentage=settings.processing_fee_percentage,
            fixed_processing_fee=settings.fixed_processing_fee,
        )

    def update(self, principal: Principal, update: FeeSettingsUpdateRequest) -> FeeSettings:
        _require_admin(principal, "update admin settings")
        changes = update.model_dump(exclude_none=True)
        method_changes = changes.pop("withdrawal_fees", None) or {}
        for method in method_changes:
            if method not in METHOD_FEE_BOUNDS:
                raise MarketplaceValidationError(f"Invalid withdrawal method: {method}")

        with self.db.transaction() as conn:
            current = self.active_snapshot(conn)
            merged = current.model_dump(exclude={"version", "updated_by", "created_at"})
            merged.update(changes)
            for method, fee_change in method_changes.items():
                merged["withdrawal_fees"][method] = {**merged["withdrawal_fees"].get(method, {}), **fee_change}
            candidate = FeeSettings.model_validate(merged)
            validate_settings(candidate)
            saved = self._insert_version(conn, candidate, actor_id=principal.id)
        logger.info("Fee settings updated to version %s by %s", saved.version, principal.id)
        return saved

    def reset_to_defaults(self, principal: Principal) -> FeeSettings:
        _require_admin(principal, "reset settings")
        with self.db.transaction() as conn:
            saved = self._insert_version(conn, FeeSettings(), actor_id=principal.id)
        logger.info("Fee settings reset to defaults (version %s) by %s", saved.version, principal.id)
        return saved


settings_store = SettingsStore(db=database)
