from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal


@dataclass(frozen=True)
class Settings:
    app_name: str
    environment: Literal['dev', 'prod', 'test']
    cors_origins: str
    mongodb_uri: str
    mongodb_database: str
    max_page_size: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    environment = os.getenv('ENVIRONMENT', 'dev').strip().lower()
    if environment not in {'dev', 'prod', 'test'}:
        environment = 'dev'

    return Settings(
        app_name=os.getenv('APP_NAME', 'drugtrace-reader-api'),
        environment=environment,  # type: ignore[arg-type]
        cors_origins=os.getenv('CORS_ORIGINS', 'http://localhost:3000'),
        mongodb_uri=os.getenv('MONGODB_URI', 'mongodb://localhost:27017/?replicaSet=rs0'),
        mongodb_database=os.getenv('MONGODB_DATABASE', 'drug_tracking_db'),
        max_page_size=max(1, int(os.getenv('API_MAX_PAGE_SIZE', '500')))
    )
