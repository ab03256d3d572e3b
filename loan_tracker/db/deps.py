from collections.abc import Generator

from .session import build_record_store


def get_record_store() -> Generator:
    store = build_record_store()
    try:
        yield store
    finally:
        store.close()
