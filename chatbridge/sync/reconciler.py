"""Reconciliation of bulk-history deliveries against the store.

Upstream history arrives as overlapping, recency-ordered snapshots with no
offset primitive, so each conversation carries two cursors: the baseline
(oldest timestamp captured by its first delivery) and the last-sync cursor
(processing time of the last successful pass). A conversation without a
baseline is new and everything delivered for it is stored; a known
conversation only stores messages newer than its last-sync cursor.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from ..database.repository import Contact, Repository
from .events import HistoryDelivery, RawConversation
from .normalize import Provenance, decode_raw_message, now_ms, to_stored_message
from .projector import ViewProjector
from .writer import MessageWriter


logger = logging.getLogger(__name__)

STATUS_UNSEEN = "unseen"
STATUS_BASELINED = "baselined"
STATUS_SYNCING = "syncing"


@dataclass
class ReconcileReport:
    sync_session: str
    conversations: int = 0
    new_conversations: int = 0
    known_conversations: int = 0
    new_messages: int = 0
    failed_messages: int = 0
    skipped_messages: int = 0
    failed_conversations: list[str] = field(default_factory=list)


class HistoryReconciler:

    def __init__(
        self,
        repository: Repository,
        projector: ViewProjector,
        writer: MessageWriter,
        clock: Callable[[], int] = now_ms,
        clock_skew_ms: int = 0,
    ):
        self.repo = repository
        self.projector = projector
        self.writer = writer
        self.clock = clock
        self.clock_skew_ms = clock_skew_ms
        self._lock = asyncio.Lock()

    async def reconcile(self, delivery: HistoryDelivery) -> ReconcileReport:
        async with self._lock:
            processed_at = self.clock()
            report = ReconcileReport(sync_session=f"{Provenance.PROGRESSIVE_SYNC.value}-{processed_at}")

            logger.info(
                "Received history delivery: %d chats, %d messages, final=%s [%s]",
                len(delivery.conversations),
                sum(len(c.messages) for c in delivery.conversations),
                delivery.is_final_batch,
                report.sync_session,
            )

            with self.projector.writing():
                for conversation in delivery.conversations:
                    report.conversations += 1
                    try:
                        await self._reconcile_conversation(conversation, processed_at, report)
                    except Exception as e:
                        report.failed_conversations.append(conversation.id)
                        logger.error("Error processing chat %s: %s", conversation.id, e, exc_info=True)

            logger.info(
                "History delivery summary: %d new chats, %d existing chats, %d new messages, "
                "%d failed, %d skipped, %d chats failed [%s]",
                report.new_conversations,
                report.known_conversations,
                report.new_messages,
                report.failed_messages,
                report.skipped_messages,
                len(report.failed_conversations),
                report.sync_session,
            )

            if delivery.is_final_batch:
                await self._complete_wave(processed_at)

            return report

    async def _reconcile_conversation(
        self,
        conversation: RawConversation,
        processed_at: int,
        report: ReconcileReport,
    ) -> None:
        jid = conversation.id
        cursor = await self.repo.get_sync_cursor(jid)
        is_new = cursor is None or cursor.is_new

        decoded = []
        for raw in conversation.messages:
            message = decode_raw_message(raw, jid, processed_at)
            if message is None:
                report.skipped_messages += 1
                logger.debug("Skipped message without a valid key in chat %s", jid)
                continue
            decoded.append(message)

        await self.repo.upsert_conversation(jid, conversation.name, conversation.unread_count)
        if conversation.name and conversation.name != jid:
            await self.repo.upsert_contact(Contact(jid=jid, name=conversation.name))

        if is_new:
            report.new_conversations += 1
            provenance = Provenance.INITIAL_SYNC
            to_store = decoded
        else:
            report.known_conversations += 1
            provenance = Provenance.PROGRESSIVE_SYNC
            last_sync = cursor.last_sync_timestamp or cursor.history_baseline_timestamp
            to_store = [m for m in decoded if m.timestamp > last_sync]

        result = await self.writer.persist(to_store, provenance, f"{provenance.value}-{processed_at}")
        report.new_messages += len(result.saved)
        report.failed_messages += result.failed

        if is_new and decoded:
            baseline = min(m.timestamp for m in decoded)
            await self.repo.set_history_baseline(jid, baseline)
            logger.debug("New chat %s: baseline %d, saved %d messages", jid, baseline, len(result.saved))
        elif not is_new:
            logger.debug(
                "Existing chat %s: %d of %d delivered messages newer than last sync, saved %d",
                jid, len(to_store), len(decoded), len(result.saved)
            )

        if decoded:
            latest = max(decoded, key=lambda m: m.timestamp)
            await self.repo.update_conversation_summary(jid, to_stored_message(latest, provenance))

        if is_new:
            status = STATUS_BASELINED if decoded else STATUS_UNSEEN
            history_complete = None
        else:
            status = STATUS_SYNCING
            # A pass that yields nothing new is the only completion signal available.
            history_complete = not result.saved and not result.failed

        await self.repo.advance_sync_cursor(
            jid, processed_at - self.clock_skew_ms, status, history_complete
        )

    async def _complete_wave(self, processed_at: int) -> None:
        try:
            payload = await self.projector.publish_from_store()
            await self.repo.set_setting("last_sync_timestamp", processed_at)
            logger.info("Sync wave complete, conversation list has %d chats", len(payload["chats"]))
            await self.projector.flush_pending()
        except Exception as e:
            logger.error("Error completing sync wave: %s", e, exc_info=True)
