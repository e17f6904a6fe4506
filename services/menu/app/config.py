from services.common.config import ServiceSettings


class MenuSettings(ServiceSettings):
    service_name: str = "menu-service"
    database_url: str = "sqlite+aiosqlite:///./menu.db"
    port: int = 8000
    inventory_service_url: str = "http://localhost:8002"
