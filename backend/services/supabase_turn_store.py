"""Turn store implementation using Supabase PostgreSQL."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import create_client, Client

from config import SUPABASE_URL, SUPABASE_KEY, SUPABASE_TURNS_TABLE
from models.turn import ChainHead, HistoryEntry, Turn
from services.turn_store import ConstraintViolation, TurnStore

logger = logging.getLogger(__name__)

# PostgreSQL unique_violation
UNIQUE_VIOLATION = "23505"

# PostgREST caps each response; full scans are fetched in pages
PAGE_SIZE = 1000

TURN_COLUMNS = (
    "conversation_id,turn_index,created_at,user_prompt,full_prompt,response,"
    "machine_state,retrieved_context,content_hash,chain_hash"
)


class SupabaseTurnStore(TurnStore):
    """
    Turn store backed by a Supabase ``turns`` table.

    The table must declare UNIQUE (conversation_id, turn_index), see
    migrations/001_create_turns_table.sql; that constraint is what turns a
    lost race between two service instances into a ConstraintViolation.
    """

    def __init__(
        self,
        supabase_url: str = SUPABASE_URL,
        supabase_key: str = SUPABASE_KEY,
        table_name: str = SUPABASE_TURNS_TABLE
    ):
        """
        Initialize the turn store with Supabase client.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase API key
            table_name: Name of the turns table

        Raises:
            ValueError: If Supabase credentials are missing
        """
        if not supabase_url or not supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set in environment variables")

        self.table_name = table_name
        self.client: Client = create_client(supabase_url, supabase_key)
        logger.info(f"SupabaseTurnStore initialized with table: {table_name}")

    def append(self, turn: Turn) -> None:
        head = self.last_turn(turn.conversation_id)
        last_index = head.turn_index if head else 0
        if turn.turn_index != last_index + 1:
            reason = "duplicate turn index" if turn.turn_index <= last_index else (
                f"out of sequence (last stored turn is {last_index})"
            )
            raise ConstraintViolation(turn.conversation_id, turn.turn_index, reason)

        created_at = turn.created_at or datetime.now(timezone.utc)
        record = {
            "conversation_id": turn.conversation_id,
            "turn_index": turn.turn_index,
            "created_at": created_at.isoformat(),
            "user_prompt": turn.user_prompt,
            "full_prompt": turn.full_prompt,
            "response": turn.response,
            "machine_state": turn.machine_state,
            "retrieved_context": turn.retrieved_context,
            "content_hash": turn.content_hash,
            "chain_hash": turn.chain_hash,
        }

        try:
            self.client.table(self.table_name).insert(record).execute()
        except Exception as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                raise ConstraintViolation(
                    turn.conversation_id, turn.turn_index, "duplicate turn index"
                ) from e
            logger.error(f"Error appending turn to conversation {turn.conversation_id}: {e}")
            raise

        logger.info(
            f"Appended turn {turn.turn_index} to conversation {turn.conversation_id}",
            extra={
                "conversation_id": turn.conversation_id,
                "turn_index": turn.turn_index,
                "chain_hash": turn.chain_hash,
            },
        )

    def last_turn(self, conversation_id: str) -> Optional[ChainHead]:
        result = (
            self.client.table(self.table_name)
            .select("turn_index,chain_hash")
            .eq("conversation_id", conversation_id)
            .order("turn_index", desc=True)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None

        row = result.data[0]
        return ChainHead(turn_index=row["turn_index"], chain_hash=row["chain_hash"])

    def history(self, conversation_id: str, limit: Optional[int] = None) -> List[HistoryEntry]:
        query = (
            self.client.table(self.table_name)
            .select("turn_index,user_prompt,response")
            .eq("conversation_id", conversation_id)
            .order("turn_index", desc=True)
        )
        if limit:
            query = query.limit(limit)

        result = query.execute()
        rows = result.data or []

        return [
            HistoryEntry(turn_index=t["turn_index"], user_prompt=t["user_prompt"], response=t["response"])
            for t in reversed(rows)
        ]

    def all_turns_ordered(self, conversation_id: Optional[str] = None) -> List[Turn]:
        turns: List[Turn] = []
        start = 0

        while True:
            query = self.client.table(self.table_name).select(TURN_COLUMNS)
            if conversation_id is not None:
                query = query.eq("conversation_id", conversation_id)
            result = (
                query.order("conversation_id")
                .order("turn_index")
                .range(start, start + PAGE_SIZE - 1)
                .execute()
            )

            page = result.data or []
            turns.extend(self._to_turn(row) for row in page)
            if len(page) < PAGE_SIZE:
                break
            start += PAGE_SIZE

        return turns

    def count(self) -> int:
        result = self.client.table(self.table_name).select("turn_index", count="exact").execute()
        return result.count if result.count is not None else 0

    def _to_turn(self, row: Dict[str, Any]) -> Turn:
        created_at = row.get("created_at")
        return Turn(
            conversation_id=row["conversation_id"],
            turn_index=row["turn_index"],
            user_prompt=row["user_prompt"],
            response=row["response"],
            machine_state=row.get("machine_state"),
            content_hash=row["content_hash"],
            chain_hash=row["chain_hash"],
            full_prompt=row.get("full_prompt"),
            retrieved_context=row.get("retrieved_context"),
            created_at=self._parse_timestamp(created_at) if created_at else None,
        )

    def _parse_timestamp(self, timestamp_str: str) -> datetime:
        """
        Parse timestamp string from Supabase, handling various formats.

        Supabase can return timestamps with varying microsecond precision,
        which Python's fromisoformat() can't always handle. This method
        normalizes the fractional part to six digits.

        Args:
            timestamp_str: Timestamp string from Supabase

        Returns:
            datetime object
        """
        timestamp_str = timestamp_str.replace("Z", "+00:00")

        if "." in timestamp_str:
            head, tail = timestamp_str.split(".", 1)
            tz_pos = max(tail.find("+"), tail.find("-"))
            if tz_pos == -1:
                fraction, tz = tail, ""
            else:
                fraction, tz = tail[:tz_pos], tail[tz_pos:]
            timestamp_str = f"{head}.{fraction[:6].ljust(6, '0')}{tz}"

        return datetime.fromisoformat(timestamp_str)
