"""Clients for the external services the pipeline consumes.

Content generation and issue verification live in other systems. The
pipeline depends only on the two small protocols below; the HTTP clients are
the production implementations.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import requests
from loguru import logger

from cmsflow.config import CollaboratorConfig
from cmsflow.errors import CMSFlowError, GENERATION_ERROR


class CollaboratorError(CMSFlowError):
    code = "collaborator_error"


@dataclass
class GeneratedContent:
    content: str
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    content_outline: Optional[Dict[str, Any]] = None
    word_count: Optional[int] = None


@dataclass
class VerificationResult:
    verified: bool
    details: Dict[str, Any] = field(default_factory=dict)


class ContentGenerator(Protocol):
    def generate(self, *, title: str, keywords: List[str], domain: Optional[str]) -> GeneratedContent:
        ...


class IssueVerifier(Protocol):
    def verify(self, *, site_url: str, issue_category: str, analysis: Optional[Dict[str, Any]]) -> VerificationResult:
        ...


class _ServiceClient:
    def __init__(self, base_url: str, api_key: Optional[str] = None, *, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http = session or requests.Session()
        self.timeout = timeout

    def _post(self, path: str, body: Dict[str, Any]) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = self.http.post(f"{self.base_url}{path}", json=body, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            raise CollaboratorError(f"{path} failed: {e}") from e
        except ValueError as e:
            raise CollaboratorError(f"{path} returned a non-JSON body") from e


class HttpContentGenerator(_ServiceClient):
    """Calls the content-generation service: {title, keywords, domain} in, article out."""

    def generate(self, *, title: str, keywords: List[str], domain: Optional[str]) -> GeneratedContent:
        data = self._post("/generate", {"title": title, "keywords": keywords, "domain": domain})
        content = data.get("content")
        if not content:
            raise CollaboratorError("Generator returned no content", code=GENERATION_ERROR)
        logger.debug("[GENERATOR] Generated {} words for {!r}", data.get("wordCount"), title)
        return GeneratedContent(
            content=content,
            meta_title=data.get("metaTitle"),
            meta_description=data.get("metaDescription"),
            content_outline=data.get("contentOutline"),
            word_count=data.get("wordCount"),
        )


class HttpIssueVerifier(_ServiceClient):
    """Asks the verifier whether a remediated issue is actually resolved."""

    def verify(self, *, site_url: str, issue_category: str, analysis: Optional[Dict[str, Any]]) -> VerificationResult:
        data = self._post(
            "/verify",
            {"siteUrl": site_url, "issueCategory": issue_category, "analysis": analysis or {}},
        )
        # Accept a bare boolean or {"verified": bool, ...}
        if isinstance(data, bool):
            return VerificationResult(verified=data)
        return VerificationResult(verified=bool(data.get("verified")), details=data)


def build_content_generator(config: CollaboratorConfig, timeout: float = 30.0) -> Optional[HttpContentGenerator]:
    if not config.generator_url:
        return None
    return HttpContentGenerator(config.generator_url, config.generator_api_key, timeout=timeout)


def build_issue_verifier(config: CollaboratorConfig, timeout: float = 30.0) -> Optional[HttpIssueVerifier]:
    if not config.verifier_url:
        return None
    return HttpIssueVerifier(config.verifier_url, config.verifier_api_key, timeout=timeout)
