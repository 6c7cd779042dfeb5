import uuid

import shortuuid


def new_id() -> str:
    return str(uuid.uuid4())


def generate_short_token(length: int = 10) -> str:
    return shortuuid.ShortUUID().random(length=length)


def generate_transfer_number() -> str:
    return f"TRF-{generate_short_token().upper()}"
