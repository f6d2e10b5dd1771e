from config import config

COMMISSION_CONFIG_KEY = "commission_rates"


class CommissionRates:
    """
    Percentage the platform keeps from a sale. Resolution order: the owner's
    own override, then the default for the owner's account type, then the
    global fallback.
    """

    def __init__(self, type_defaults=None, fallback_rate=None):
        self.type_defaults = dict(config.COMMISSION_RATES if type_defaults is None else type_defaults)
        self.fallback_rate = config.DEFAULT_COMMISSION_RATE if fallback_rate is None else fallback_rate

    @classmethod
    def from_db(cls, db, fallback_rate=None):
        """Rates from the shared ``system_config`` record, else the configured defaults."""
        record = db.system_config.find_one({"key": COMMISSION_CONFIG_KEY})
        type_defaults = record.get("value") if record else None
        return cls(type_defaults=type_defaults, fallback_rate=fallback_rate)

    def rate_for(self, owner):
        owner = owner or {}
        override = (owner.get("payment_settings") or {}).get("commission_rate")
        if override is not None:
            return float(override)
        account_type = (owner.get("business_info") or {}).get("type") or "personal"
        if account_type in self.type_defaults:
            return float(self.type_defaults[account_type])
        return float(self.fallback_rate)

    def commission_for(self, owner, amount):
        rate = self.rate_for(owner)
        return rate, round(amount * rate / 100.0, 2)
