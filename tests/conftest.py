import os

import pytest

# keep PBKDF2 cheap under test; read when sharefile.config is first imported
os.environ.setdefault("SHAREFILE_PASSWORD_HASH_ITERATIONS", "1000")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sharefile_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SHAREFILE_DB_PATH", str(tmp_path / "sharefile.db"))
    monkeypatch.setenv("SHAREFILE_UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("SHAREFILE_LOG_DIR", str(tmp_path / "logs"))
    (tmp_path / "uploads").mkdir()

    from sharefile.db import init_db

    init_db()
    return tmp_path


@pytest.fixture
def store_file(sharefile_env):
    from sharefile.db import get_connection
    from sharefile.files import create_file, new_stored_name

    def _store(
        data: bytes = b"hello secure world",
        password: str = "Password!12345",
        name: str = "report.txt",
        download_limit=None,
        mime_type: str = "text/plain",
    ):
        stored_name = new_stored_name()
        (sharefile_env / "uploads" / stored_name).write_bytes(data)
        with get_connection() as conn:
            return create_file(
                conn,
                original_name=name,
                stored_name=stored_name,
                password=password,
                file_size=len(data),
                mime_type=mime_type,
                download_limit=download_limit,
            )

    return _store
