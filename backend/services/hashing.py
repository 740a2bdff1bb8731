"""Content hashing and chain linking for ledger turns."""
import hashlib
import json
from typing import Optional

# Previous-hash value used for the first turn of every conversation
GENESIS_HASH = "0"


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def serialize_turn_content(
    turn_index: int,
    user_prompt: str,
    response: str,
    machine_state: Optional[str]
) -> str:
    """
    Serialize the hashed fields of a turn into their canonical form.

    Keys are emitted in the fixed order turn, userPrompt, llmResponse,
    machineState as compact JSON with non-ASCII characters kept verbatim,
    so every writer produces byte-identical digest input.
    """
    return json.dumps(
        {
            "turn": turn_index,
            "userPrompt": user_prompt,
            "llmResponse": response,
            "machineState": machine_state,
        },
        separators=(",", ":"),
        ensure_ascii=False,
    )


def hash_turn_content(
    turn_index: int,
    user_prompt: str,
    response: str,
    machine_state: Optional[str]
) -> str:
    """
    Compute the content hash of a turn.

    Args:
        turn_index: Position of the turn in its conversation (1-based)
        user_prompt: Raw user input
        response: Raw model output
        machine_state: Serialized structured output, or None

    Returns:
        Lowercase hex SHA-256 digest
    """
    return _sha256_hex(serialize_turn_content(turn_index, user_prompt, response, machine_state))


def link_chain_hash(content_hash: str, previous_chain_hash: Optional[str] = None) -> str:
    """
    Link a content hash to the previous chain hash of its conversation.

    Args:
        content_hash: Content hash of the new turn
        previous_chain_hash: Chain hash of the prior turn, None for the first turn

    Returns:
        Lowercase hex SHA-256 of ``content_hash + previous`` (``"0"`` at genesis)
    """
    return _sha256_hex(content_hash + (previous_chain_hash or GENESIS_HASH))
