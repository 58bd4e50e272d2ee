from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


_PROJECT_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_PROJECT_ROOT / ".env")


@dataclass(frozen=True)
class PostgresConfig:
    host: str = field(default_factory=lambda: os.getenv("PGHOST", "localhost"))
    port: int = field(default_factory=lambda: int(os.getenv("PGPORT", "5432")))
    database: str = field(default_factory=lambda: os.getenv("PGDATABASE", "svitanok"))
    user: str = field(default_factory=lambda: os.getenv("PGUSER", "svitanok"))
    password: str = field(default_factory=lambda: os.getenv("PGPASSWORD", "svitanok"))

    def dsn(self) -> str:
        return (
            f"host={self.host} port={self.port} dbname={self.database} "
            f"user={self.user} password={self.password}"
        )

    def sqlalchemy_url(self) -> str:
        return f"postgresql+psycopg://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


@dataclass(frozen=True)
class Paths:
    project_root: str

    @property
    def feeds_dir(self) -> str:
        return os.path.join(self.project_root, "data", "feeds")

    @property
    def reports_dir(self) -> str:
        return os.path.join(self.project_root, "reports")
