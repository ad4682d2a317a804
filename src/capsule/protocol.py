"""
Capsule - Data channel wire protocol.

Created by orpheus497

This module defines the frames exchanged over the peer data channel.

Text frames are UTF-8 JSON objects tagged with a "kind":
- chat:       {"kind": "chat", "text": ...}
- file-meta:  {"kind": "file-meta", "itemId", "name", "type", "size",
               "chunkSize", "salt": [32 ints]}
- location:   {"kind": "location", "payload": {...}} (opaque)

Binary frames carry one encrypted file chunk:
    header JSON + 0x0A + raw ciphertext
with header {"kind": "file-chunk", "itemId", "sequenceIndex",
"iv": [12 ints], "ciphertextLength"}. The frame is split at the first 0x0A
byte; JSON never contains a raw newline so the header cannot be cut short.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from .constants import (
    FRAME_DELIMITER,
    FRAME_KIND_CHAT,
    FRAME_KIND_FILE_CHUNK,
    FRAME_KIND_FILE_META,
    FRAME_KIND_LOCATION,
    ITEM_SALT_SIZE,
    IV_SIZE,
    MAX_TEXT_FRAME_SIZE,
)
from .errors import ErrorCode, MalformedFrame, ProtocolError


@dataclass
class ChatFrame:
    """Plaintext chat message."""

    text: str
    kind: str = field(default=FRAME_KIND_CHAT, init=False)


@dataclass
class FileMetaFrame:
    """Announces a file; opens a receive context on the peer."""

    item_id: str
    name: str
    mime_type: str
    size: int
    chunk_size: int
    salt: bytes
    kind: str = field(default=FRAME_KIND_FILE_META, init=False)


@dataclass
class FileChunkFrame:
    """One encrypted file chunk."""

    item_id: str
    sequence_index: int
    iv: bytes
    ciphertext: bytes
    kind: str = field(default=FRAME_KIND_FILE_CHUNK, init=False)


@dataclass
class LocationFrame:
    """Location payload produced and consumed by the map collaborator."""

    payload: Dict[str, Any]
    kind: str = field(default=FRAME_KIND_LOCATION, init=False)


@dataclass
class UnknownFrame:
    """Well-formed JSON with a kind this side does not handle."""

    kind: str
    body: Dict[str, Any]


Frame = Union[ChatFrame, FileMetaFrame, FileChunkFrame, LocationFrame, UnknownFrame]


class Protocol:
    """Frame encoder/decoder for the transfer channel."""

    MAX_TEXT_SIZE = MAX_TEXT_FRAME_SIZE

    @staticmethod
    def encode_text(body: Dict[str, Any]) -> str:
        """
        Serialize a text frame.

        Raises:
            ProtocolError: If the encoded frame exceeds the text frame limit
        """
        text = json.dumps(body, separators=(",", ":"), ensure_ascii=False)
        size = len(text.encode("utf-8"))
        if size > Protocol.MAX_TEXT_SIZE:
            raise ProtocolError(
                ErrorCode.E303_FRAME_TOO_LARGE,
                f"Text frame too large: {size} bytes",
                {"size": size, "max_size": Protocol.MAX_TEXT_SIZE},
            )
        return text

    @staticmethod
    def encode_chat(text: str) -> str:
        return Protocol.encode_text({"kind": FRAME_KIND_CHAT, "text": text})

    @staticmethod
    def encode_file_meta(meta: FileMetaFrame) -> str:
        return Protocol.encode_text(
            {
                "kind": FRAME_KIND_FILE_META,
                "itemId": meta.item_id,
                "name": meta.name,
                "type": meta.mime_type,
                "size": meta.size,
                "chunkSize": meta.chunk_size,
                "salt": list(meta.salt),
            }
        )

    @staticmethod
    def encode_location(payload: Dict[str, Any]) -> str:
        return Protocol.encode_text({"kind": FRAME_KIND_LOCATION, "payload": payload})

    @staticmethod
    def encode_file_chunk(item_id: str, sequence_index: int, iv: bytes, ciphertext: bytes) -> bytes:
        """
        Build a binary chunk frame: header JSON, newline, ciphertext.
        """
        header = {
            "kind": FRAME_KIND_FILE_CHUNK,
            "itemId": item_id,
            "sequenceIndex": sequence_index,
            "iv": list(iv),
            "ciphertextLength": len(ciphertext),
        }
        head = json.dumps(header, separators=(",", ":")).encode("utf-8")
        return head + FRAME_DELIMITER + bytes(ciphertext)

    @staticmethod
    def decode_frame(data: Union[str, bytes, bytearray, memoryview]) -> Frame:
        """
        Decode one frame received from the data channel.

        Strings are text frames. Bytes containing the delimiter are chunk
        frames; bytes without it are treated as UTF-8 text frames.

        Raises:
            MalformedFrame: If the frame cannot be parsed or validated
        """
        if isinstance(data, str):
            Protocol._check_text_size(len(data.encode("utf-8")))
            return Protocol._decode_text(data)

        buf = bytes(data)
        split = buf.find(FRAME_DELIMITER)
        if split < 0:
            Protocol._check_text_size(len(buf))
            try:
                return Protocol._decode_text(buf.decode("utf-8"))
            except UnicodeDecodeError as e:
                raise MalformedFrame(message=f"Binary frame without delimiter: {e}")

        Protocol._check_text_size(split)
        header = Protocol._load_json(buf[:split])
        if header.get("kind") != FRAME_KIND_FILE_CHUNK:
            raise MalformedFrame(
                message=f"Unexpected binary frame kind: {header.get('kind')!r}",
                details={"kind": header.get("kind")},
            )
        return Protocol._decode_chunk(header, buf[split + 1 :])

    @staticmethod
    def _check_text_size(size: int) -> None:
        """Reject text frames and chunk headers over the text frame limit."""
        if size > Protocol.MAX_TEXT_SIZE:
            raise MalformedFrame(
                ErrorCode.E303_FRAME_TOO_LARGE,
                f"Frame text too large: {size} bytes",
                {"size": size, "max_size": Protocol.MAX_TEXT_SIZE},
            )

    @staticmethod
    def _load_json(raw: Union[str, bytes]) -> Dict[str, Any]:
        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedFrame(message=f"Failed to parse frame: {e}", details={"error": str(e)})
        if not isinstance(body, dict):
            raise MalformedFrame(message="Frame is not a JSON object")
        return body

    @staticmethod
    def _decode_text(text: str) -> Frame:
        body = Protocol._load_json(text)
        kind = body.get("kind")

        if kind == FRAME_KIND_CHAT:
            return ChatFrame(text=_require(body, "text", str))

        if kind == FRAME_KIND_FILE_META:
            size = _require(body, "size", int)
            chunk_size = _require(body, "chunkSize", int)
            if size < 0 or chunk_size <= 0:
                raise MalformedFrame(
                    message="Invalid file size or chunk size",
                    details={"size": size, "chunkSize": chunk_size},
                )
            return FileMetaFrame(
                item_id=_require_item_id(body),
                name=_require(body, "name", str),
                mime_type=_require(body, "type", str),
                size=size,
                chunk_size=chunk_size,
                salt=_byte_list(body, "salt", ITEM_SALT_SIZE),
            )

        if kind == FRAME_KIND_LOCATION:
            payload = body.get("payload")
            if not isinstance(payload, dict):
                payload = {k: v for k, v in body.items() if k != "kind"}
            return LocationFrame(payload=payload)

        if kind == FRAME_KIND_FILE_CHUNK:
            raise MalformedFrame(message="File chunk sent as a text frame")

        if not isinstance(kind, str):
            raise MalformedFrame(message="Frame has no kind")

        return UnknownFrame(kind=kind, body=body)

    @staticmethod
    def _decode_chunk(header: Dict[str, Any], payload: bytes) -> FileChunkFrame:
        sequence_index = _require(header, "sequenceIndex", int)
        if sequence_index < 0:
            raise MalformedFrame(message=f"Negative sequence index: {sequence_index}")

        length = _require(header, "ciphertextLength", int)
        if length != len(payload):
            raise MalformedFrame(
                message=f"Ciphertext length mismatch: header {length}, frame {len(payload)}",
                details={"declared": length, "actual": len(payload)},
            )

        return FileChunkFrame(
            item_id=_require_item_id(header),
            sequence_index=sequence_index,
            iv=_byte_list(header, "iv", IV_SIZE),
            ciphertext=payload,
        )


def _require(body: Dict[str, Any], name: str, expected: type) -> Any:
    value = body.get(name)
    # bool is an int subclass; never accept it as a number
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise MalformedFrame(
            message=f"Missing or invalid field: {name}",
            details={"field": name, "kind": body.get("kind")},
        )
    return value


def _require_item_id(body: Dict[str, Any]) -> str:
    item_id = _require(body, "itemId", str)
    if not item_id:
        raise MalformedFrame(message="Empty itemId")
    return item_id


def _byte_list(body: Dict[str, Any], name: str, length: int) -> bytes:
    values: List[Any] = _require(body, name, list)
    if len(values) != length or not all(
        isinstance(v, int) and not isinstance(v, bool) and 0 <= v <= 255 for v in values
    ):
        raise MalformedFrame(
            message=f"Field {name} must be {length} byte values",
            details={"field": name, "length": len(values)},
        )
    return bytes(values)
