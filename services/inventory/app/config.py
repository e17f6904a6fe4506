from services.common.config import ServiceSettings


class InventorySettings(ServiceSettings):
    service_name: str = "inventory-service"
    database_url: str = "sqlite+aiosqlite:///./inventory.db"
    port: int = 8002
    menu_service_url: str = "http://localhost:8000"
    reservation_ttl_minutes: int = 15
    # 未知の商品に割り当てる初期在庫数
    default_stock_quantity: int = 100
