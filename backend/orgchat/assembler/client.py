"""
HTTP client for the chat API, used by the conversation runtime.

Works with any ``httpx.Client`` pointed at the service, including FastAPI's
``TestClient``.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, List, Optional, Sequence
from uuid import UUID

import httpx

from orgchat.schemas.chat import MessageOut, MessagesOut, SessionListOut, SessionOut, UIMessage

logger = logging.getLogger(__name__)


class ChatClientError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SessionNotFound(ChatClientError):
    pass


def _detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = None
    return detail if isinstance(detail, str) else f"Request failed ({response.status_code})"


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code == 404:
        raise SessionNotFound(_detail(response), 404)
    if response.status_code >= 400:
        raise ChatClientError(_detail(response), response.status_code)


class ChatClient:
    def __init__(
        self,
        http: httpx.Client,
        user_id: UUID,
        organization_ids: Sequence[UUID],
        base_path: str = "/api/chat",
    ):
        self.http = http
        self.base_path = base_path.rstrip("/")
        self.headers = {
            "X-User-Id": str(user_id),
            "X-Org-Id": ",".join(str(o) for o in organization_ids),
        }

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self.http.request(method, f"{self.base_path}{path}", headers=self.headers, **kwargs)
        except httpx.HTTPError as e:
            raise ChatClientError(f"Chat service unreachable: {e}") from e
        _raise_for_status(response)
        return response

    def list_sessions(self, organization_id: UUID, page: int = 1, page_size: int = 20) -> SessionListOut:
        r = self._request(
            "GET",
            "/sessions",
            params={"organizationId": str(organization_id), "page": page, "pageSize": page_size},
        )
        return SessionListOut.model_validate(r.json())

    def get_session(self, chat_session_id: UUID, organization_id: UUID) -> SessionOut:
        r = self._request("GET", f"/sessions/{chat_session_id}", params={"organizationId": str(organization_id)})
        return SessionOut.model_validate(r.json())

    def get_messages(self, chat_session_id: UUID, organization_id: UUID) -> List[MessageOut]:
        r = self._request(
            "GET", f"/sessions/{chat_session_id}/messages", params={"organizationId": str(organization_id)}
        )
        return MessagesOut.model_validate(r.json()).messages

    def create_session(self, organization_id: UUID, title: Optional[str] = None) -> SessionOut:
        body: Dict[str, Any] = {"organizationId": str(organization_id)}
        if title is not None:
            body["title"] = title
        r = self._request("POST", "/sessions", json=body)
        return SessionOut.model_validate(r.json())

    def update_session(self, chat_session_id: UUID, organization_id: UUID, title: str) -> None:
        self._request(
            "PATCH", f"/sessions/{chat_session_id}", json={"organizationId": str(organization_id), "title": title}
        )

    def delete_session(self, chat_session_id: UUID, organization_id: UUID) -> None:
        self._request("DELETE", f"/sessions/{chat_session_id}", params={"organizationId": str(organization_id)})

    def stream_turn(
        self, chat_session_id: UUID, organization_id: UUID, messages: Sequence[UIMessage]
    ) -> Iterator[Dict[str, Any]]:
        """Yield the decoded NDJSON events of one streamed turn."""
        body = {
            "organizationId": str(organization_id),
            "messages": [m.model_dump(mode="json", by_alias=True, exclude_none=True) for m in messages],
        }
        try:
            with self.http.stream(
                "POST", f"{self.base_path}/sessions/{chat_session_id}/stream", headers=self.headers, json=body
            ) as response:
                if response.status_code >= 400:
                    response.read()
                    _raise_for_status(response)
                for line in response.iter_lines():
                    if not line.strip():
                        continue
                    try:
                        yield json.loads(line)
                    except ValueError as e:
                        raise ChatClientError(f"Malformed stream event: {line[:100]}") from e
        except httpx.HTTPError as e:
            raise ChatClientError(f"Stream interrupted: {e}") from e
