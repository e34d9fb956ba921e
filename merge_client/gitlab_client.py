#!/usr/bin/env python3
"""
GitLab REST client used by the merge scheduler: lists labelled merge requests,
reads files from their source branches, merges them and maintains the
scheduler's feedback comments.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request


DEFAULT_BASE_URL = "https://gitlab.com/api/v4"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_PER_PAGE = 20
MERGE_STATUS_MERGEABLE = "mergeable"


class GitlabError(Exception):
    """A GitLab API call failed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(GitlabError):
    pass


@dataclass(frozen=True)
class GitlabConfig:
    access_token: str
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class MergeRequest:
    project_id: int
    iid: int
    title: str
    source_branch: str
    detailed_merge_status: str
    web_url: str = ""
    reference: str = ""

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "MergeRequest":
        try:
            project_id = int(payload["project_id"])
            iid = int(payload["iid"])
        except (KeyError, TypeError, ValueError) as exc:
            raise GitlabError(f"Unexpected merge request payload: {exc}") from exc
        references = payload.get("references") or {}
        return MergeRequest(
            project_id=project_id,
            iid=iid,
            title=str(payload.get("title") or ""),
            source_branch=str(payload.get("source_branch") or ""),
            detailed_merge_status=str(payload.get("detailed_merge_status") or ""),
            web_url=str(payload.get("web_url") or ""),
            reference=str(references.get("full") or f"{project_id}!{iid}"),
        )


def is_mergeable(mr: MergeRequest) -> bool:
    return mr.detailed_merge_status == MERGE_STATUS_MERGEABLE


def format_comment(title: str, body: str) -> str:
    return f"**{title}**:  {body}"


def extract_title_from_comment(body: str) -> str:
    parts = body.split("**")
    if len(parts) >= 2:
        return parts[1]
    return ""


class MergeRequestClient(ABC):
    """Operations the merge scheduler needs from the hosting service."""

    @abstractmethod
    def list_merge_requests_with_label(self, label: str) -> List[MergeRequest]:
        pass

    @abstractmethod
    def get_file_from_branch(self, mr: MergeRequest, path: str) -> bytes:
        pass

    @abstractmethod
    def refresh_merge_request(self, mr: MergeRequest) -> MergeRequest:
        pass

    @abstractmethod
    def merge_merge_request(self, mr: MergeRequest) -> None:
        pass

    @abstractmethod
    def comment(self, mr: MergeRequest, title: str, body: str) -> None:
        """Post ``body`` under ``title``, updating our newest comment if it has the same title."""


def api_request(
    config: GitlabConfig,
    method: str,
    path: str,
    query: Optional[Dict[str, str]] = None,
    body: Optional[Dict[str, Any]] = None,
    raw: bool = False,
) -> Tuple[Any, Mapping[str, str]]:
    url = config.base_url.rstrip("/") + path
    if query:
        url += "?" + urllib_parse.urlencode(query)
    data = json.dumps(body).encode("utf-8") if body is not None else None
    headers = {"PRIVATE-TOKEN": config.access_token, "Accept": "application/json"}
    if data is not None:
        headers["Content-Type"] = "application/json"
    req = urllib_request.Request(url=url, data=data, method=method, headers=headers)

    try:
        with urllib_request.urlopen(req, timeout=config.timeout_seconds) as response:
            content = response.read()
            response_headers = response.headers
    except urllib_error.HTTPError as exc:
        message = f"{method} {path} failed with HTTP {exc.code}: {_error_detail(exc)}"
        if exc.code == 404:
            raise NotFoundError(message, status=exc.code) from exc
        raise GitlabError(message, status=exc.code) from exc
    except (urllib_error.URLError, OSError) as exc:
        raise GitlabError(f"{method} {path} failed: {exc}") from exc

    if raw:
        return content, response_headers
    try:
        payload = json.loads(content.decode("utf-8")) if content else None
    except ValueError as exc:
        raise GitlabError(f"{method} {path} returned invalid JSON: {exc}") from exc
    return payload, response_headers


def _error_detail(exc: urllib_error.HTTPError) -> str:
    try:
        payload = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError, AttributeError):
        return str(exc.reason)
    if isinstance(payload, dict):
        detail = payload.get("message") or payload.get("error")
        if detail:
            return str(detail)
    return str(exc.reason)


class GitlabClient(MergeRequestClient):
    def __init__(self, config: GitlabConfig, user_id: int) -> None:
        self.config = config
        # Comments authored by this user are ours to update.
        self.user_id = user_id

    def list_merge_requests_with_label(self, label: str) -> List[MergeRequest]:
        query = {
            "state": "opened",
            "labels": label,
            "scope": "all",
            "with_merge_status_recheck": "true",
            "per_page": str(DEFAULT_PER_PAGE),
            "page": "1",
        }
        mrs: List[MergeRequest] = []
        while True:
            payload, headers = api_request(self.config, "GET", "/merge_requests", query=query)
            if not isinstance(payload, list):
                raise GitlabError("Unexpected response when listing merge requests.")
            mrs.extend(MergeRequest.from_payload(item) for item in payload)
            next_page = (headers.get("X-Next-Page") or "").strip()
            if not next_page:
                break
            query["page"] = next_page
        return mrs

    def get_file_from_branch(self, mr: MergeRequest, path: str) -> bytes:
        file_path = urllib_parse.quote(path, safe="")
        content, _ = api_request(
            self.config,
            "GET",
            f"/projects/{mr.project_id}/repository/files/{file_path}/raw",
            query={"ref": mr.source_branch},
            raw=True,
        )
        return content

    def refresh_merge_request(self, mr: MergeRequest) -> MergeRequest:
        payload, _ = api_request(self.config, "GET", self._mr_path(mr))
        if not isinstance(payload, dict):
            raise GitlabError(f"Unexpected response when fetching {mr.reference}.")
        return MergeRequest.from_payload(payload)

    def merge_merge_request(self, mr: MergeRequest) -> None:
        api_request(
            self.config,
            "PUT",
            f"{self._mr_path(mr)}/merge",
            body={"should_remove_source_branch": True},
        )

    def comment(self, mr: MergeRequest, title: str, body: str) -> None:
        full_comment = format_comment(title, body)
        notes, _ = api_request(
            self.config,
            "GET",
            f"{self._mr_path(mr)}/notes",
            query={"sort": "desc", "order_by": "created_at"},
        )
        if not isinstance(notes, list):
            raise GitlabError(f"Unexpected response when listing notes of {mr.reference}.")
        for note in notes:
            if not isinstance(note, dict):
                raise GitlabError(f"Unexpected note payload on {mr.reference}.")
            author = note.get("author") or {}
            if author.get("id") != self.user_id:
                continue
            if extract_title_from_comment(note.get("body") or "") == title:
                api_request(
                    self.config,
                    "PUT",
                    f"{self._mr_path(mr)}/notes/{note['id']}",
                    body={"body": full_comment},
                )
                return
            # Only the newest own comment is a candidate for an update.
            break

        api_request(self.config, "POST", f"{self._mr_path(mr)}/notes", body={"body": full_comment})

    @staticmethod
    def _mr_path(mr: MergeRequest) -> str:
        return f"/projects/{mr.project_id}/merge_requests/{mr.iid}"


def connect(config: GitlabConfig) -> GitlabClient:
    """Resolve the token's user and return a client acting as that user."""
    user, _ = api_request(config, "GET", "/user")
    if not isinstance(user, dict) or "id" not in user:
        raise GitlabError("Failed to get current user information from GitLab.")
    return GitlabClient(config, user_id=int(user["id"]))
