"""eventchain.ledger

Chain building, publishing, tip management and verification.

Nothing here owns entity records. The tip store contract is the only way a
tip moves, and it moves only after the broker has the event.
"""

from eventchain.ledger.builder import BuiltEvent, ChainBuilder, Correlation, message_digest, signing_bytes
from eventchain.ledger.outbox import Outbox, OutboxEntry, OutboxStatus
from eventchain.ledger.publisher import DeliveryReport, InMemoryPublisher, KafkaPublisher, Publisher
from eventchain.ledger.service import EventService, PendingEvent, RecordOutcome
from eventchain.ledger.tips import InMemoryTipStore, TipStore
from eventchain.ledger.verify import ChainVerificationResult, verify_chain, verify_message, walk_back

__all__ = [
    "BuiltEvent",
    "ChainBuilder",
    "ChainVerificationResult",
    "Correlation",
    "DeliveryReport",
    "EventService",
    "InMemoryPublisher",
    "InMemoryTipStore",
    "KafkaPublisher",
    "Outbox",
    "OutboxEntry",
    "OutboxStatus",
    "PendingEvent",
    "Publisher",
    "RecordOutcome",
    "TipStore",
    "message_digest",
    "signing_bytes",
    "verify_chain",
    "verify_message",
    "walk_back",
]
