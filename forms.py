"""
Multipart form parsing for the bid submission endpoint.

`parse_form` reads the request body, streams any file parts into the uploads
directory and hands back a `ParseResult`. It does not raise for problems the
client caused (bad content type, broken multipart body, oversized file); those
come back in `ParseResult.error` and the caller decides what to answer.
"""

import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from typing import Collection, Dict, List, Optional, TypeVar, Union

from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException, MultiPartParser
from starlette.requests import Request

import config
from errors import FormParseError, UploadTooLarge

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")

T = TypeVar("T")


@dataclass
class StoredFile:
    """An uploaded file written to the uploads directory."""
    field: str
    original_filename: str
    new_filename: str
    path: str
    size: int
    content_type: Optional[str] = None

    @property
    def url(self) -> str:
        return f"{config.UPLOAD_URL_PREFIX.rstrip('/')}/{self.new_filename}"

    def remove(self) -> None:
        _remove_quietly(self.path)


# A field sent once maps to its value, a repeated field to the list of values
FormFields = Dict[str, Union[str, List[str]]]
FormFiles = Dict[str, Union[StoredFile, List[StoredFile]]]


@dataclass
class ParseResult:
    fields: FormFields = field(default_factory=dict)
    files: FormFiles = field(default_factory=dict)
    error: Optional[FormParseError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def stored_files(self) -> List[StoredFile]:
        out = []
        for value in self.files.values():
            out.extend(value if isinstance(value, list) else [value])
        return out

    def discard_files(self) -> None:
        """Remove every file this parse wrote to disk."""
        for stored in self.stored_files():
            stored.remove()


def take_first(value: Union[T, List[T], None]) -> Optional[T]:
    """First element of a list value, or the value itself when it is not a list."""
    if isinstance(value, list):
        return value[0] if value else None
    return value


def file_extension(filename: Optional[str]) -> str:
    """Extension of `filename` including the dot, reduced to safe characters."""
    if not filename:
        return ""
    ext = os.path.splitext(os.path.basename(filename))[1]
    ext = re.sub(r"[^A-Za-z0-9]", "", ext[1:])
    return f".{ext}" if ext else ""


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _collect(target: dict, key: str, value) -> None:
    if key not in target:
        target[key] = value
    elif isinstance(target[key], list):
        target[key].append(value)
    else:
        target[key] = [target[key], value]


async def store_upload(upload: UploadFile, field_name: str, upload_dir: str, max_bytes: int) -> StoredFile:
    """Copy an uploaded file into `upload_dir` under a generated name, keeping its extension."""
    os.makedirs(upload_dir, exist_ok=True)
    new_filename = uuid.uuid4().hex + file_extension(upload.filename)
    path = os.path.join(upload_dir, new_filename)

    size = 0
    try:
        with open(path, "wb") as out:
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_bytes:
                    raise UploadTooLarge(upload.filename, max_bytes)
                out.write(chunk)
    except Exception:
        _remove_quietly(path)
        raise

    logger.debug("Stored upload %r as %s (%d bytes)", upload.filename, path, size)
    return StoredFile(
        field=field_name,
        original_filename=upload.filename,
        new_filename=new_filename,
        path=path,
        size=size,
        content_type=upload.content_type,
    )


class FileTooLarge(MultiPartException):
    def __init__(self, filename: Optional[str], limit: int):
        super().__init__(f"File {filename!r} exceeded maximum size of {limit} bytes.")
        self.filename = filename
        self.limit = limit


class SizeLimitedMultiPartParser(MultiPartParser):
    """Starlette's multipart parser with a per-file byte cap enforced while the body streams in."""

    def __init__(self, *args, max_file_size: int, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_file_size = max_file_size
        self._file_bytes = 0

    def on_part_begin(self) -> None:
        super().on_part_begin()
        self._file_bytes = 0

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        part = self._current_part
        if part.file is not None:
            self._file_bytes += end - start
            if self._file_bytes > self.max_file_size:
                raise FileTooLarge(part.file.filename, self.max_file_size)
        super().on_part_data(data, start, end)


async def read_form(request: Request, max_file_size: int, max_field_size: int) -> FormData:
    """Read the request body as a form, aborting as soon as a file part goes over `max_file_size`."""
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type != "multipart/form-data":
        return await request.form(max_part_size=max_field_size)
    parser = SizeLimitedMultiPartParser(
        request.headers,
        request.stream(),
        max_part_size=max_field_size,
        max_file_size=max_file_size,
    )
    return await parser.parse()


async def parse_form(
    request: Request,
    upload_dir: Optional[str] = None,
    max_bytes: Optional[int] = None,
    file_fields: Optional[Collection[str]] = None,
) -> ParseResult:
    """Parse `request` into fields and stored files.

    Only file parts named in `file_fields` are written to disk (all of them when
    it is None); other file parts are dropped.
    """
    upload_dir = upload_dir or config.UPLOAD_DIR
    max_bytes = max_bytes if max_bytes is not None else config.MAX_UPLOAD_BYTES

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type not in FORM_CONTENT_TYPES:
        return ParseResult(error=FormParseError(f"Unsupported content type: {content_type or 'none'}"))

    try:
        form = await read_form(request, max_bytes, config.MAX_FIELD_BYTES)
    except FileTooLarge as exc:
        return ParseResult(error=UploadTooLarge(exc.filename, exc.limit))
    except (MultiPartException, StarletteHTTPException, ValueError) as exc:
        message = getattr(exc, "message", None) or getattr(exc, "detail", None) or str(exc)
        return ParseResult(error=FormParseError(f"Malformed form body: {message}"))

    result = ParseResult()
    try:
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if file_fields is not None and key not in file_fields:
                    continue
                # Browsers send an empty, nameless part when no file was chosen
                if not value.filename and not value.size:
                    continue
                _collect(result.files, key, await store_upload(value, key, upload_dir, max_bytes))
            else:
                _collect(result.fields, key, value)
    except FormParseError as exc:
        result.discard_files()
        return ParseResult(error=exc)
    except OSError as exc:
        result.discard_files()
        return ParseResult(error=FormParseError(f"Could not store upload: {exc}"))
    finally:
        await form.close()

    return result
