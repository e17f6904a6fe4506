"""
Common — サービス設定

各サービスはフィールド名と同じ環境変数（DATABASE_URL, REDIS_URL,
MENU_SERVICE_URL, ...）から設定を読む。設定オブジェクトは一度だけ作って
create_app() に渡し、それ以降 os.environ は参照しない。
"""

import os
from typing import Self

from pydantic import BaseModel


class ServiceSettings(BaseModel):
    service_name: str
    database_url: str
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"
    http_timeout: float = 10.0
    port: int = 8000

    @classmethod
    def from_env(cls, **overrides) -> Self:
        values = {
            name: os.environ[name.upper()]
            for name in cls.model_fields
            if name.upper() in os.environ
        }
        values.update(overrides)
        return cls(**values)
