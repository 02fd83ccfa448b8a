import json
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from account_pool.config import Settings  # noqa: E402
from account_pool.main import create_app  # noqa: E402
from account_pool.models import Account  # noqa: E402
from account_pool.security import compute_signature  # noqa: E402

SECRET = "test_secret"


class RecordingDispatcher:
    def __init__(self):
        self.calls = []

    async def dispatch(self, buyer_email: str, username: str, password: str) -> bool:
        self.calls.append((buyer_email, username, password))
        return True


@pytest.fixture
def settings(tmp_path):
    """
    Settings pointing at a disposable SQLite file; cheap bcrypt rounds keep tests fast.
    """
    return Settings(
        _env_file=None,
        db_url=f"sqlite:///{tmp_path / 'pool.db'}",
        hmac_secret=SECRET,
        password_hash_rounds=4,
        low_pool_threshold=1,
    )


@pytest.fixture
def app(settings):
    application = create_app(settings)
    application.state.dispatcher = RecordingDispatcher()
    yield application
    application.state.engine.dispose()


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def session_factory(app):
    return app.state.session_factory


def seed_accounts(session_factory, count: int, prefix: str = "user") -> list[int]:
    with session_factory() as db:
        accounts = [
            Account(username=f"{prefix}{i:04d}", email=f"{prefix}{i:04d}@ciliosclick.com")
            for i in range(1, count + 1)
        ]
        db.add_all(accounts)
        db.commit()
        return [a.id for a in accounts]


def make_notification(
    notification_id: str,
    transaction: str,
    event: str = "PURCHASE_APPROVED",
    email: str = "buyer@example.com",
    name: str = "Buyer Name",
) -> dict:
    return {
        "id": notification_id,
        "event": event,
        "version": "2.0.0",
        "data": {
            "product": {"id": 6012952, "name": "Cilios Click"},
            "purchase": {
                "transaction": transaction,
                "status": "APPROVED" if event == "PURCHASE_APPROVED" else "CANCELED",
                "buyer": {"email": email, "name": name},
            },
        },
    }


def signed_post(client, payload: dict, secret: str = SECRET, body: bytes | None = None):
    raw = body if body is not None else json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Hotmart-Signature": compute_signature(secret, raw),
    }
    return client.post("/webhooks/hotmart", content=raw, headers=headers)
