import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.config import cfg
from core.models.base import Base


DEFAULT_DB_URL = "sqlite:///data/storefront.db"


def _resolve_db_url() -> str:
    return str(os.getenv("DB") or cfg.get("db", DEFAULT_DB_URL))


class Database:
    def __init__(self, url: str = None):
        self.url = url or _resolve_db_url()
        self._engine = None
        self._session_factory = None

    def _ensure_sqlite_dir(self):
        if not self.url.startswith("sqlite:///"):
            return
        path = self.url[len("sqlite:///"):]
        folder = os.path.dirname(path)
        if path and path != ":memory:" and folder:
            os.makedirs(folder, exist_ok=True)

    @property
    def engine(self):
        if self._engine is None:
            self._ensure_sqlite_dir()
            kwargs = {"pool_pre_ping": True}
            if self.url.startswith("sqlite"):
                # 多线程共享同一个 SQLite 文件，写锁等待由 timeout 控制
                kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            self._engine = create_engine(self.url, **kwargs)
            self._session_factory = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)
        return self._engine

    def get_session(self):
        self.engine
        return self._session_factory()

    def create_tables(self):
        # 导入模型以注册到 Base.metadata
        import core.models  # noqa: F401
        Base.metadata.create_all(self.engine)


DB = Database()
