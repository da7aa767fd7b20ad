"""Attachment validation and storage for image/file messages."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol

import ulid

from app.settings import settings

from .exceptions import ValidationError
from .models import MessageType

_ALLOWED_PREFIXES = ("image/", "video/", "audio/", "application/pdf")


@dataclass(slots=True, frozen=True)
class StoredAttachment:
	key: str
	url: str
	file_name: str
	media_type: str
	size_bytes: int

	def to_metadata(self) -> dict:
		return {
			"url": self.url,
			"key": self.key,
			"file_name": self.file_name,
			"media_type": self.media_type,
			"size_bytes": self.size_bytes,
		}


class AttachmentStorage(Protocol):
	async def upload(self, owner_id: str, file_name: str, media_type: str, data: bytes) -> StoredAttachment:
		...


def validate_attachment(file_name: str, media_type: str, size_bytes: int) -> str:
	media_type = (media_type or "").strip().lower()
	if not media_type or not media_type.startswith(_ALLOWED_PREFIXES):
		raise ValidationError("unsupported_media_type")
	if size_bytes <= 0:
		raise ValidationError("attachment_empty")
	if size_bytes > settings.messaging_max_attachment_bytes:
		raise ValidationError("attachment_too_large")
	if not (file_name or "").strip():
		raise ValidationError("file_name_required")
	return media_type


def message_type_for(media_type: str) -> MessageType:
	return MessageType.IMAGE if media_type.lower().startswith("image/") else MessageType.FILE


def _extension(file_name: str, media_type: str) -> str:
	suffix = PurePosixPath(file_name).suffix.lower()
	if suffix and len(suffix) <= 8:
		return suffix
	return mimetypes.guess_extension(media_type) or ""


class LocalAttachmentStorage:
	"""Writes uploads under ``upload_dir`` and serves them from ``upload_base_url``."""

	def __init__(self, root: Optional[Path | str] = None, *, base_url: Optional[str] = None) -> None:
		self._root = Path(root or settings.upload_dir)
		self._base_url = (base_url or settings.upload_base_url).rstrip("/")

	async def upload(self, owner_id: str, file_name: str, media_type: str, data: bytes) -> StoredAttachment:
		if not owner_id or owner_id in (".", "..") or any(sep in owner_id for sep in ("/", "\\", "\x00")):
			raise ValidationError("invalid_owner")
		media_type = validate_attachment(file_name, media_type, len(data))
		key = f"messages/{owner_id}/{ulid.new()}{_extension(file_name, media_type)}"
		target = self._root / key
		target.parent.mkdir(parents=True, exist_ok=True)
		target.write_bytes(data)
		return StoredAttachment(
			key=key,
			url=f"{self._base_url}/{key}",
			file_name=PurePosixPath(file_name).name,
			media_type=media_type,
			size_bytes=len(data),
		)
