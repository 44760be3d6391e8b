"""Book records stored in the user's repository under `buzz.bookhive.book`."""

from enum import Enum
from typing import Any, Dict

from social.graze.bookshelf.errors import BookshelfException

BOOK_COLLECTION = "buzz.bookhive.book"


class InvalidBookStatus(BookshelfException):
    code = "invalid_status"
    status = 400


class BookStatus(str, Enum):
    finished = "buzz.bookhive.defs#finished"
    reading = "buzz.bookhive.defs#reading"
    want_to_read = "buzz.bookhive.defs#wantToRead"
    abandoned = "buzz.bookhive.defs#abandoned"
    owned = "buzz.bookhive.defs#owned"

    @property
    def label(self) -> str:
        return STATUS_LABELS[self]


STATUS_LABELS: Dict[BookStatus, str] = {
    BookStatus.finished: "Finished",
    BookStatus.reading: "Currently Reading",
    BookStatus.want_to_read: "Want to Read",
    BookStatus.abandoned: "Abandoned",
    BookStatus.owned: "Owned",
}


def parse_book_status(value: Any) -> BookStatus:
    """
    Accept a full status token (`buzz.bookhive.defs#reading`) or its fragment
    (`reading`).

    Raises:
        InvalidBookStatus: For anything else
    """
    if not isinstance(value, str):
        raise InvalidBookStatus(f"error-books-1001 Book status must be a string: {value!r}")
    if value:
        candidate = value.strip()
        if "#" not in candidate:
            candidate = f"buzz.bookhive.defs#{candidate}"
        for status in BookStatus:
            if status.value == candidate:
                return status
    raise InvalidBookStatus(f"error-books-1000 Unknown book status: {value}")


def status_changes(status: BookStatus) -> Dict[str, Any]:
    return {"status": status.value}
