from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import DateTime, String, Text, orm
from sqlalchemy.types import TypeDecorator

from typing_extensions import Annotated


class TZDateTime(TypeDecorator):
    """Timezone-aware datetime that survives backends without timezone support.

    Values are stored as naive UTC and come back as aware UTC datetimes.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime is not allowed")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


str512 = Annotated[str, 512]
str1024 = Annotated[str, 1024]
text = Annotated[str, "text"]
tzdatetime = Annotated[datetime, "tzdatetime"]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str512: String(512),
        str1024: String(1024),
        text: Text(),
        tzdatetime: TZDateTime(),
    }
