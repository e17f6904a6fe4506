from services.common.config import ServiceSettings


class BillingSettings(ServiceSettings):
    service_name: str = "billing-service"
    database_url: str = "sqlite+aiosqlite:///./billing.db"
    port: int = 8003
    orders_service_url: str = "http://localhost:8001"
