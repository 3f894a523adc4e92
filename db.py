from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from config import config

ROOT_DIR = Path(__file__).resolve().parent


def resolve_db_path(raw: str, root_dir: Path = ROOT_DIR) -> Path:
    """APP_DB_PATH if set (relative paths are taken from the app directory), else data/lab.db."""
    db_path = Path(raw).expanduser() if raw else root_dir / "data" / "lab.db"
    if not db_path.is_absolute():
        db_path = (root_dir / db_path).resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


DB_PATH = resolve_db_path(config.APP_DB_PATH)
DATABASE_URL = f"sqlite:///{DB_PATH.as_posix()}"

# モニタはバックグラウンドスレッドからもセッションを開く
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass
