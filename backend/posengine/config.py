import os
from decimal import Decimal, InvalidOperation


class Settings:
    def _env_int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def _env_decimal(self, name: str, default: str) -> Decimal:
        raw = (os.getenv(name) or "").strip()
        try:
            return Decimal(raw or default)
        except InvalidOperation:
            return Decimal(default)

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.db_url = os.getenv("DATABASE_URL", "postgresql://localhost/posengine")
        self.db_pool_min_size = self._env_int("DB_POOL_MIN_SIZE", 1)
        self.db_pool_max_size = self._env_int("DB_POOL_MAX_SIZE", 10)
        # Used when the currency collaborator returns no row flagged as base.
        self.base_currency = (os.getenv("BASE_CURRENCY", "USD").strip() or "USD").upper()
        # Display precision only; totals keep full Decimal precision internally.
        self.money_display_dp = self._env_int("MONEY_DISPLAY_DP", 3)
        # Refunds strictly above this amount (base currency) need manager approval.
        self.refund_approval_threshold = self._env_decimal("REFUND_APPROVAL_THRESHOLD", "100")
        # Stock assigned to placeholder products synthesized from quotes.
        self.placeholder_stock = self._env_decimal("QUOTE_PLACEHOLDER_STOCK", "999")
        self.quote_valid_days = self._env_int("QUOTE_VALID_DAYS", 30)


settings = Settings()
