from services.common.config import ServiceSettings


class OrdersSettings(ServiceSettings):
    service_name: str = "order-service"
    database_url: str = "sqlite+aiosqlite:///./orders.db"
    port: int = 8001
    menu_service_url: str = "http://localhost:8000"
    inventory_service_url: str = "http://localhost:8002"
    billing_service_url: str = "http://localhost:8003"
    currency: str = "USD"
