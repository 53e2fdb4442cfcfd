import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    panel_url: str = os.getenv("PANEL_URL", "http://panel:80")
    panel_key: str = os.getenv("PANEL_KEY", "dev-panel-key")
    panel_client_key: str = os.getenv("PANEL_CLIENT_KEY", os.getenv("PANEL_KEY", "dev-panel-key"))
    panel_timeout_seconds: float = float(os.getenv("PANEL_TIMEOUT_SECONDS", "30"))

    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./panel_ledger.db")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "panel-dashboard")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))

    # Quota handed to every new user
    default_ram: int = int(os.getenv("DEFAULT_RAM", "1024"))
    default_disk: int = int(os.getenv("DEFAULT_DISK", "10240"))
    default_cpu: int = int(os.getenv("DEFAULT_CPU", "100"))
    default_allocations: int = int(os.getenv("DEFAULT_ALLOCATIONS", "1"))
    default_databases: int = int(os.getenv("DEFAULT_DATABASES", "1"))
    default_slots: int = int(os.getenv("DEFAULT_SLOTS", "1"))
    default_coins: int = int(os.getenv("DEFAULT_COINS", "0"))

    # Coin store, price per unit
    price_ram: int = int(os.getenv("PRICE_RAM", "10"))
    price_cpu: int = int(os.getenv("PRICE_CPU", "15"))
    price_disk: int = int(os.getenv("PRICE_DISK", "5"))
    price_allocations: int = int(os.getenv("PRICE_ALLOCATIONS", "5"))
    price_databases: int = int(os.getenv("PRICE_DATABASES", "5"))
    price_slots: int = int(os.getenv("PRICE_SLOTS", "5"))

    default_swap: int = int(os.getenv("DEFAULT_SWAP", "0"))
    default_io: int = int(os.getenv("DEFAULT_IO", "500"))
    default_backups: int = int(os.getenv("DEFAULT_BACKUPS", "0"))
    server_renewal_days: int = int(os.getenv("SERVER_RENEWAL_DAYS", "30"))

    purge_batch_size: int = int(os.getenv("PURGE_BATCH_SIZE", "5"))
    purge_max_batch_size: int = int(os.getenv("PURGE_MAX_BATCH_SIZE", "50"))

    def ledger_defaults(self) -> dict:
        return {
            "ram": self.default_ram,
            "disk": self.default_disk,
            "cpu": self.default_cpu,
            "allocations": self.default_allocations,
            "databases": self.default_databases,
            "slots": self.default_slots,
            "coins": self.default_coins,
        }

    def store_prices(self) -> dict:
        return {
            "ram": self.price_ram,
            "cpu": self.price_cpu,
            "disk": self.price_disk,
            "allocations": self.price_allocations,
            "databases": self.price_databases,
            "slots": self.price_slots,
        }

settings = Settings()
