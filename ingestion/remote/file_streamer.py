"""
Paginated reads of newline-delimited JSON exports from the file cabinet.

Exports are too large for a single script response, so the file RESTlet
serves them in line windows (``lineStart`` / ``maxLines``). The streamer
walks those windows and yields parsed records page by page; the manifest
resolver maps a logical export name to the file id the export currently
lives in.
"""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import logging

from core.config import settings
from core.exceptions import InvalidManifestError, ScriptEndpointError
from ingestion.remote.client import NetSuiteClient
from schemas.records import ExportManifest

logger = logging.getLogger(__name__)

BOM = "\ufeff"


@dataclass(frozen=True)
class FileRef:
    """
    How the file RESTlet should locate a file.

    Exactly one addressing mode is used: a file id, a name within a
    folder, or the script's own manifest.
    """
    file_id: Optional[int] = None
    name: Optional[str] = None
    folder_id: Optional[int] = None
    manifest: bool = False

    @classmethod
    def by_id(cls, file_id: int) -> "FileRef":
        return cls(file_id=file_id)

    @classmethod
    def by_name(cls, name: str, folder_id: int) -> "FileRef":
        return cls(name=name, folder_id=folder_id)

    def params(self) -> Dict[str, Any]:
        if self.file_id is not None:
            return {"id": self.file_id}
        if self.name is not None:
            return {"name": self.name, "folderId": self.folder_id}
        if self.manifest:
            return {"manifest": 1}
        raise ValueError("FileRef needs an id, a name or the manifest flag")

    def describe(self) -> str:
        if self.file_id is not None:
            return f"file:{self.file_id}"
        if self.name is not None:
            return f"{self.name}@{self.folder_id}"
        return "manifest"


def parse_ndjson(text: str) -> List[Dict[str, Any]]:
    """Parse newline-delimited JSON, silently dropping blank and malformed lines"""
    if text.startswith(BOM):
        text = text[1:]
    records = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except ValueError:
            continue
    return records


class FileStreamer:
    """Line-window reader over the file RESTlet"""

    def __init__(
        self,
        client: NetSuiteClient,
        url: Optional[str] = None,
        script_id: Optional[int] = None,
        deploy_id: Optional[str] = None,
    ):
        self.client = client
        self.url = url or settings.file_restlet_url
        self.script_id = script_id or settings.NS_FILE_RL_SCRIPT_ID
        self.deploy_id = deploy_id or settings.NS_FILE_RL_DEPLOY_ID

    async def fetch_window(self, ref: FileRef, line_start: int, max_lines: int) -> Dict[str, Any]:
        """One script call: ``{ok, data, linesReturned, done}``"""
        params = {
            "script": self.script_id,
            "deploy": self.deploy_id,
            **ref.params(),
            "lineStart": line_start,
            "maxLines": max_lines,
        }
        body = await self.client.call_script(
            "GET", self.url, tag=f"file_restlet:{ref.describe()}", params=params
        )
        if not isinstance(body, dict) or not body.get("ok"):
            raise ScriptEndpointError(
                "File script returned ok=false",
                context={
                    "tag": f"file_restlet:{ref.describe()}",
                    "status": 200,
                    "body": json.dumps(body)[:600],
                }
            )
        return body

    async def stream_pages(
        self,
        ref: FileRef,
        page_lines: Optional[int] = None,
        line_start: int = 0,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Yield parsed records one window at a time.

        Args:
            ref: File to read
            page_lines: Lines requested per call
            line_start: Initial cursor (0 for a fresh stream)

        Yields:
            Non-empty lists of parsed records
        """
        page_lines = page_lines or settings.FILE_PAGE_LINES
        cursor = line_start

        while True:
            body = await self.fetch_window(ref, cursor, page_lines)
            records = parse_ndjson(str(body.get("data") or ""))
            returned = int(body.get("linesReturned") or 0)

            if records:
                yield records

            cursor += returned
            if body.get("done") or returned < page_lines:
                break

        logger.debug(f"Streamed {ref.describe()} up to line {cursor}")

    async def read_text(self, ref: FileRef, page_lines: Optional[int] = None) -> str:
        """Whole file as text, concatenated across windows"""
        page_lines = page_lines or settings.FILE_PAGE_LINES
        chunks: List[str] = []
        cursor = 0

        while True:
            body = await self.fetch_window(ref, cursor, page_lines)
            data = str(body.get("data") or "")
            if data:
                chunks.append(data)
            returned = int(body.get("linesReturned") or 0)
            cursor += returned
            if body.get("done") or returned < page_lines:
                break

        return "\n".join(chunks)


class ManifestResolver:
    """Resolve logical export names to file ids"""

    def __init__(self, client: NetSuiteClient, streamer: FileStreamer):
        self.client = client
        self.streamer = streamer

    async def resolve_file_id(self, name: str, folder_id: int) -> Optional[int]:
        """Most recent file with this name in the folder, or None"""
        escaped = name.replace("'", "''")
        statement = (
            f"SELECT id FROM file WHERE name = '{escaped}' AND folder = {int(folder_id)} "
            f"ORDER BY id DESC FETCH NEXT 1 ROWS ONLY"
        )
        rows = await self.client.query(statement, tag=f"resolve_file:{name}")
        if not rows:
            return None
        try:
            return int(rows[0].get("id"))
        except (TypeError, ValueError):
            return None

    async def resolve_via_manifest(
        self,
        manifest_file_id: int,
        export_key: Optional[str] = None,
    ) -> ExportManifest:
        """
        Read a manifest and extract the export it points at.

        With ``export_key`` the id comes from ``files[export_key].id``,
        otherwise from ``file.id``.

        Raises:
            InvalidManifestError: The manifest is not JSON or lacks the entry
        """
        manifest = await self.read_manifest(manifest_file_id)
        return self.export_entry(manifest, manifest_file_id, export_key)

    async def resolve_exports(self, manifest_file_id: int, export_keys: List[str]) -> Dict[str, ExportManifest]:
        """Several ``files[...]`` entries of one manifest, read once"""
        manifest = await self.read_manifest(manifest_file_id)
        return {key: self.export_entry(manifest, manifest_file_id, key) for key in export_keys}

    async def read_manifest(self, manifest_file_id: int) -> Dict[str, Any]:
        text = await self.streamer.read_text(FileRef.by_id(manifest_file_id))
        if text.startswith(BOM):
            text = text[1:]

        try:
            manifest = json.loads(text)
        except ValueError as e:
            raise InvalidManifestError(
                "Manifest is not valid JSON",
                context={
                    "manifest_id": manifest_file_id,
                    "reason": "invalid_manifest_json",
                    "received": text[:200],
                },
                original_exception=e,
            )
        if not isinstance(manifest, dict):
            raise InvalidManifestError(
                "Manifest is not a JSON object",
                context={"manifest_id": manifest_file_id, "received": type(manifest).__name__},
            )
        return manifest

    @staticmethod
    def export_entry(manifest: Dict[str, Any], manifest_file_id: int, export_key: Optional[str]) -> ExportManifest:
        if export_key:
            expected = f"files.{export_key}.id"
            files = manifest.get("files")
            entry = files.get(export_key) if isinstance(files, dict) else None
            received = sorted(files.keys()) if isinstance(files, dict) else sorted(manifest.keys())
        else:
            expected = "file.id"
            entry = manifest.get("file")
            received = sorted(manifest.keys())

        file_id = entry.get("id") if isinstance(entry, dict) else None
        try:
            file_id = int(file_id)
        except (TypeError, ValueError):
            raise InvalidManifestError(
                f"Manifest missing {expected}",
                context={
                    "manifest_id": manifest_file_id,
                    "expected": expected,
                    "received": received,
                },
            )

        return ExportManifest(
            file_id=file_id,
            file_name=entry.get("name"),
            rows=entry.get("rows"),
            generated_at=manifest.get("generated_at"),
            tag=manifest.get("tag"),
            location_name=manifest.get("location_name"),
            counts=manifest.get("counts") if isinstance(manifest.get("counts"), dict) else None,
            keys=received,
        )
