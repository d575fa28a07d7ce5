"""
storage.py — Where uploaded tender files come from.

The generator only needs three things from storage: the list of files
attached to an analysis, the raw bytes of each, and the analysis row's
title/procurement type. Two implementations:

  LocalFileStore     <root>/<analysis_id>/* plus an optional analysis.json;
                     used by the CLI and the tests
  SupabaseFileStore  the production setup: storage bucket + PostgREST

Bytes coming out of either are untrusted user uploads. Nothing here
parses them.
"""

from __future__ import annotations

import json
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import requests

from bid_documents.config import config
from bid_documents.schemas import AnalysisInfo

logger = logging.getLogger(__name__)

ANALYSIS_META_FILE = "analysis.json"


@dataclass
class StoredFile:
    file_name: str
    file_path: str
    content_type: str = ""


class FileStore:
    """Read-only contract used by the pipeline."""

    def list_files(self, analysis_id: str) -> List[StoredFile]:
        raise NotImplementedError

    def download(self, path: str) -> bytes:
        raise NotImplementedError

    def get_analysis(self, analysis_id: str) -> Optional[AnalysisInfo]:
        return None


class LocalFileStore(FileStore):
    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _resolve(self, relative: str) -> Path:
        path = (self.root / relative).resolve()
        if self.root not in path.parents and path != self.root:
            raise ValueError(f"Path escapes store root: {relative}")
        return path

    def list_files(self, analysis_id: str) -> List[StoredFile]:
        folder = self._resolve(analysis_id)
        if not folder.is_dir():
            logger.warning("No upload folder for analysis %s at %s", analysis_id, folder)
            return []
        files = []
        for path in sorted(folder.iterdir()):
            if not path.is_file() or path.name == ANALYSIS_META_FILE:
                continue
            ctype, _ = mimetypes.guess_type(path.name)
            files.append(StoredFile(
                file_name=path.name,
                file_path=f"{analysis_id}/{path.name}",
                content_type=ctype or "",
            ))
        return files

    def download(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def get_analysis(self, analysis_id: str) -> Optional[AnalysisInfo]:
        meta = self._resolve(analysis_id) / ANALYSIS_META_FILE
        if not meta.is_file():
            return None
        data = json.loads(meta.read_text(encoding="utf-8"))
        data.setdefault("id", analysis_id)
        return AnalysisInfo.model_validate(data)


class SupabaseFileStore(FileStore):
    """
    Supabase storage + REST, with the service-role key.

    Tables: analysis_files(analysis_id, file_name, file_path, file_type),
    analyses(id, title, procurement_type). Bucket: config.storage.bucket.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        bucket: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.url = (url or config.storage.supabase_url).rstrip("/")
        self.key = key or config.storage.supabase_key
        if not self.url or not self.key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        self.bucket = bucket or config.storage.bucket
        self.session = session or requests.Session()
        self.timeout = config.storage.request_timeout_s

    @property
    def _headers(self):
        return {"apikey": self.key, "Authorization": f"Bearer {self.key}"}

    def _rows(self, table: str, params: dict) -> list:
        resp = self.session.get(
            f"{self.url}/rest/v1/{table}", headers=self._headers, params=params, timeout=self.timeout
        )
        resp.raise_for_status()
        return resp.json()

    def list_files(self, analysis_id: str) -> List[StoredFile]:
        rows = self._rows("analysis_files", {
            "analysis_id": f"eq.{analysis_id}",
            "select": "file_name,file_path,file_type",
        })
        return [
            StoredFile(
                file_name=row.get("file_name") or row["file_path"].rsplit("/", 1)[-1],
                file_path=row["file_path"],
                content_type=row.get("file_type") or "",
            )
            for row in rows
        ]

    def download(self, path: str) -> bytes:
        resp = self.session.get(
            f"{self.url}/storage/v1/object/{self.bucket}/{path.lstrip('/')}",
            headers=self._headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.content

    def get_analysis(self, analysis_id: str) -> Optional[AnalysisInfo]:
        rows = self._rows("analyses", {"id": f"eq.{analysis_id}", "select": "id,title,procurement_type"})
        if not rows:
            return None
        return AnalysisInfo.model_validate(rows[0])
