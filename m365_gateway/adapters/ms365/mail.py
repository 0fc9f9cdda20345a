"""
MS365 mail adapter.

Normalized email operations on top of a ClientSession. All functions return
plain dictionaries regardless of the Graph payload shape.

Functions:
- get_message(session, message_id): Fetch single message with full details
- get_messages(session, message_ids): Fetch several messages in one batch
- list_messages(session, folder, limit, filter_query): List messages from folder
"""

from typing import Any, Dict, List, Optional, Sequence

from .errors import GraphSystemError
from .models import RequestDescriptor
from .session import ClientSession


LIST_FIELDS = [
    "id", "subject", "from", "receivedDateTime", "bodyPreview",
    "hasAttachments", "isRead", "importance",
]


def normalize_message(message: Dict[str, Any], include_body: bool = True) -> Dict[str, Any]:
    """
    Map a Graph message resource to the adapter's standard format.

    Returns:
        Dictionary with keys id, subject, from {name, address}, received_at,
        body_preview, has_attachments, is_read, importance and, when
        include_body is set, body_content and body_type.
    """
    sender = (message.get("from") or {}).get("emailAddress") or {}
    result = {
        "id": message.get("id"),
        "subject": message.get("subject") or "",
        "from": {
            "name": sender.get("name"),
            "address": sender.get("address"),
        },
        "received_at": message.get("receivedDateTime"),
        "body_preview": message.get("bodyPreview") or "",
        "has_attachments": bool(message.get("hasAttachments")),
        "is_read": bool(message.get("isRead")),
        "importance": message.get("importance") or "normal",
    }
    if include_body:
        body = message.get("body") or {}
        result["body_content"] = body.get("content") or ""
        result["body_type"] = (body.get("contentType") or "text").lower()
    return result


async def get_message(session: ClientSession, message_id: str) -> Dict[str, Any]:
    """
    Fetch a single email message.

    Args:
        session: Authenticated ClientSession
        message_id: MS365 message ID

    Returns:
        Normalized message dictionary including body_content and body_type

    Raises:
        GraphError: If the fetch fails

    Example:
        msg = await get_message(session, "AAMkAGI2...")
        print(msg["subject"], msg["from"]["address"])
    """
    message = await session.api(f"/me/messages/{message_id}").get()
    return normalize_message(message)


async def get_messages(session: ClientSession, message_ids: Sequence[str]) -> List[Optional[Dict[str, Any]]]:
    """
    Fetch several messages through one batch call.

    Entries come back in the order of ``message_ids``. A message the server
    could not return (for example a 404 sub-response) is None.
    """
    descriptors = [RequestDescriptor("GET", f"/me/messages/{mid}") for mid in message_ids]
    bodies = await session.batch(descriptors)
    messages = []
    for body in bodies:
        if isinstance(body, dict) and "error" not in body and body.get("id"):
            messages.append(normalize_message(body))
        else:
            messages.append(None)
    return messages


async def list_messages(
    session: ClientSession,
    folder: str = "inbox",
    limit: int = 50,
    filter_query: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    List email messages from a folder.

    Args:
        session: Authenticated ClientSession
        folder: Folder name or id (inbox, sentitems, drafts, etc.)
        limit: Maximum messages to return (default 50, max 100)
        filter_query: OData filter query (e.g., "isRead eq false")

    Returns:
        List of message dictionaries (same format as get_message, without body)

    Example:
        messages = await list_messages(session, folder="inbox", limit=10)
        unread = await list_messages(session, filter_query="isRead eq false")
    """
    params = {
        "$top": min(max(limit, 1), 100),
        "$select": ",".join(LIST_FIELDS),
    }
    if filter_query:
        params["$filter"] = filter_query

    response = await session.api(f"/me/mailFolders/{folder}/messages").get(params=params)
    if not isinstance(response, dict):
        raise GraphSystemError("Unexpected message list payload", context={"folder": folder})
    return [normalize_message(m, include_body=False) for m in response.get("value") or []]
