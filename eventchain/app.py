"""eventchain.app

Wiring. Config in, a ready ``UserService`` out.

Entry points call ``build_app``; nothing else constructs the graph.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from eventchain.core.config import Config
from eventchain.core.logging import get_logger
from eventchain.ledger.builder import ChainBuilder
from eventchain.ledger.outbox import Outbox
from eventchain.ledger.publisher import InMemoryPublisher, KafkaPublisher, Publisher
from eventchain.ledger.service import EventService
from eventchain.security.signer import Ed25519Signer
from eventchain.users.service import UserService
from eventchain.users.store import UserStore


@dataclass
class App:
    config: Config
    signer: Ed25519Signer
    store: UserStore
    outbox: Outbox | None
    publisher: Publisher
    events: EventService
    users: UserService

    def close(self, timeout: float | None = None) -> None:
        self.events.close(timeout)
        if self.outbox is not None:
            self.outbox.close()
        self.store.close()


def build_app(
    cfg: Config,
    *,
    root: Path | None = None,
    publisher: Publisher | None = None,
    in_memory_broker: bool = False,
    logger: logging.Logger | None = None,
) -> App:
    """Construct every component from config.

    Raises:
        SigningUnavailable: no usable signing key.
    """

    base = root or Path.cwd()
    data_dir = cfg.store.data_dir if cfg.store.data_dir.is_absolute() else base / cfg.store.data_dir
    log = logger or get_logger("app")

    signing = cfg.signing
    if signing.key_path is not None and not signing.key_path.is_absolute():
        signing = signing.model_copy(update={"key_path": base / signing.key_path})
    signer = Ed25519Signer.from_config(signing)
    if not signing.private_key_hex and signing.key_path is None:
        log.warning("signing_key_ephemeral", extra={"public_key": signer.public_key_hex})

    store = UserStore(data_dir / cfg.store.db_name)
    outbox = Outbox(data_dir / cfg.store.outbox_db_name) if cfg.chain.outbox_enabled else None

    if publisher is None:
        if in_memory_broker:
            publisher = InMemoryPublisher()
        else:
            publisher = KafkaPublisher(
                cfg.kafka,
                publish_timeout_s=cfg.chain.publish_timeout_s,
                logger=get_logger("ledger.publisher"),
            )

    events = EventService(
        ChainBuilder(signer, service_id=cfg.service.service_id),
        publisher,
        store,
        topic=cfg.kafka.topic,
        publish_timeout_s=cfg.chain.publish_timeout_s,
        max_conflict_retries=cfg.chain.max_conflict_retries,
        outbox=outbox,
        logger=get_logger("ledger.service"),
    )
    users = UserService(store, events, logger=get_logger("users.service"))
    return App(
        config=cfg,
        signer=signer,
        store=store,
        outbox=outbox,
        publisher=publisher,
        events=events,
        users=users,
    )
