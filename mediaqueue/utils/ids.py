"""Identifier helpers."""

import uuid


def create_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


def create_comment_id() -> str:
    return f"cmt_{uuid.uuid4().hex}"
