import shortuuid

_ids = shortuuid.ShortUUID()


def generate_shortuuid() -> str:
    """22-character row id (a uuid4 in shortuuid's alphabet)."""
    return _ids.uuid()


def generate_short_token(length: int = 12) -> str:
    return _ids.random(length=length)


def generate_idempotency_key(prefix: str = "mv") -> str:
    # One key per logical submission; a retry of that submission must reuse it.
    return f"{prefix}-{_ids.uuid()}"
