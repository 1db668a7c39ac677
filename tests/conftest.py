from __future__ import annotations

import itertools
import logging
import shutil
import sys
from pathlib import Path

import pytest

# uv/pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from eventchain.core.config import Config, StoreConfig  # noqa: E402
from eventchain.core.metrics import MetricsRegistry  # noqa: E402
from eventchain.ledger.builder import ChainBuilder  # noqa: E402
from eventchain.ledger.service import EventService  # noqa: E402
from eventchain.ledger.tips import InMemoryTipStore  # noqa: E402
from eventchain.security.signer import Ed25519Signer  # noqa: E402
from tests.unit._fakes import ScriptedPublisher  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_logging():  # type: ignore[no-untyped-def]
    yield
    logger = logging.getLogger("eventchain")
    for h in list(logger.handlers):
        logger.removeHandler(h)
    logger.propagate = True


@pytest.fixture()
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def test_config(temp_dir: Path) -> Config:
    """Config fixture that points data_dir to a temp directory."""

    cfg_dst_dir = temp_dir / "config"
    cfg_dst_dir.mkdir(parents=True, exist_ok=True)
    shutil.copy2(REPO_ROOT / "config" / "default.yaml", cfg_dst_dir / "default.yaml")

    c = Config.from_yaml(cfg_dst_dir / "default.yaml")
    return c.model_copy(update={"store": StoreConfig(data_dir=temp_dir / "data")})


@pytest.fixture()
def signer() -> Ed25519Signer:
    return Ed25519Signer.generate()


@pytest.fixture()
def clock():  # type: ignore[no-untyped-def]
    ticks = itertools.count(1_700_000_000_000)
    return lambda: next(ticks)


@pytest.fixture()
def builder(signer: Ed25519Signer, clock) -> ChainBuilder:  # type: ignore[no-untyped-def]
    ids = itertools.count(1)
    return ChainBuilder(signer, service_id="user-service", clock=clock, id_factory=lambda: f"msg-{next(ids):04d}")


@pytest.fixture()
def tips() -> InMemoryTipStore:
    return InMemoryTipStore()


@pytest.fixture()
def publisher() -> ScriptedPublisher:
    return ScriptedPublisher()


@pytest.fixture()
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture()
def service(
    builder: ChainBuilder,
    publisher: ScriptedPublisher,
    tips: InMemoryTipStore,
    metrics: MetricsRegistry,
) -> EventService:
    return EventService(builder, publisher, tips, topic="user-events", publish_timeout_s=2.0, metrics=metrics)
