import logging
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional

from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlmodel import SQLModel, Session, create_engine, func, select

from .config import Settings
from .db.models import Album, ImageRecord, PostRecord, SessionRecord
from .exceptions import (
    DataError,
    NotConnectedError,
    PoolExhaustedError,
    PostNotFoundError,
    RowCountMismatchError,
    SessionNotFoundError,
)
from .application.ports.post_repo import Image, Post, PostOrder

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_unix(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def _from_unix(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _is_memory_sqlite(db_url: str) -> bool:
    url = make_url(db_url)
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def build_engine(db_url: str, echo: bool = False, pool_size: int = 5,
                 max_overflow: int = 10, pool_timeout: float = 30.0) -> Engine:
    # Choose engine options based on database scheme
    engine_kwargs = {}

    if db_url.startswith("sqlite"):
        # Connections are handed between the event loop and worker threads
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_sqlite(db_url):
            # Every new connection would see a fresh empty database
            engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs.update({
                "poolclass": QueuePool,
                "pool_size": pool_size,
                "max_overflow": max_overflow,
                "pool_timeout": pool_timeout,
            })
    else:
        engine_kwargs.update({
            "pool_pre_ping": True,
            "pool_recycle": 300,
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "pool_timeout": pool_timeout,
        })

    return create_engine(db_url, echo=echo, **engine_kwargs)


class DataManager:
    """Pooled access to the relational store.

    One instance is built at startup and shared by every request handler.
    Each public method borrows one connection for its own duration.
    """

    def __init__(self, db_url: str, pool_size: int = 5, max_overflow: int = 10,
                 pool_timeout: float = 30.0, echo: bool = False,
                 clock: Callable[[], datetime] = _utc_now) -> None:
        self.db_url = db_url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool_timeout = pool_timeout
        self.echo = echo
        self.clock = clock
        self.engine: Optional[Engine] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "DataManager":
        return cls(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            echo=settings.DEBUG,
        )

    # ---------------------------------------------------------------- pool

    def connect(self) -> None:
        """Create the connection pool. Creates the database file if absent."""
        if self.engine is not None:
            logger.debug("Database already connected")
            return
        logger.info("Opening database at %s...", make_url(self.db_url).render_as_string(hide_password=True))
        self.engine = build_engine(
            self.db_url,
            echo=self.echo,
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
            pool_timeout=self.pool_timeout,
        )

    def dispose(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None

    def init(self) -> None:
        """Create the albums, posts, images and sessions tables if absent."""
        engine = self._require_engine()
        try:
            SQLModel.metadata.create_all(engine, tables=[
                Album.__table__,
                PostRecord.__table__,
                ImageRecord.__table__,
                SessionRecord.__table__,
            ])
        except SQLAlchemyError as e:
            raise DataError(f"Failed to create tables: {e}") from e

    def _require_engine(self) -> Engine:
        if self.engine is None:
            raise NotConnectedError("Database not connected")
        return self.engine

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        engine = self._require_engine()
        try:
            with Session(engine) as session:
                yield session
        except PoolTimeoutError as e:
            raise PoolExhaustedError(f"Failed to get connection to {action}: {e}") from e
        except StaleDataError as e:
            raise RowCountMismatchError(f"Unexpected row count while trying to {action}: {e}", 1, None) from e
        except SQLAlchemyError as e:
            raise DataError(f"Failed to {action}: {e}") from e

    # --------------------------------------------------------------- posts

    def add_album(self, title: str) -> int:
        with self._session("add album") as session:
            album = Album(title=title)
            session.add(album)
            session.commit()
            session.refresh(album)
            return album.id

    def add_post(self, post: Post, album_id: Optional[int] = None) -> int:
        """Insert the post and all of its images. Either everything is
        committed or nothing is.
        """
        with self._session("add post") as session:
            record = PostRecord(
                description=post.desc,
                upload_time=_to_unix(post.upload_time),
                album_id=album_id,
            )
            session.add(record)
            session.flush()
            if record.id is None:
                session.rollback()
                raise RowCountMismatchError("Invalid insert happened", 1, 0)

            image_records = [
                ImageRecord(path=img.path, width=img.width, height=img.height, post_id=record.id)
                for img in post.images
            ]
            session.add_all(image_records)
            session.flush()
            inserted = sum(1 for r in image_records if r.id is not None)
            if inserted != len(image_records):
                session.rollback()
                raise RowCountMismatchError("Invalid insert happened", len(image_records), inserted)

            session.commit()
            post_id = record.id
        logger.info(f"Added post {post_id} with {len(post.images)} image(s)")
        return post_id

    @staticmethod
    def _record_to_post(record: PostRecord, images: List[Image]) -> Post:
        return Post(
            id=record.id,
            desc=record.description or "",
            upload_time=_from_unix(record.upload_time),
            images=images,
            album_id=record.album_id,
        )

    @staticmethod
    def _record_to_image(record: ImageRecord) -> Image:
        return Image(path=record.path, width=record.width, height=record.height)

    def find_post_by_id(self, post_id: int) -> Optional[Post]:
        with self._session(f"look up post {post_id}") as session:
            record = session.get(PostRecord, post_id)
            if record is None:
                return None
            image_records = session.exec(
                select(ImageRecord)
                .where(ImageRecord.post_id == post_id)
                .order_by(ImageRecord.id)
            ).all()
            return self._record_to_post(record, [self._record_to_image(r) for r in image_records])

    def get_posts(self, start: int, count: int, order: PostOrder = PostOrder.NEW_FIRST) -> List[Post]:
        """Retrieve ``count`` posts starting at the 0-based index ``start``."""
        if order is PostOrder.NEW_FIRST:
            ordering = (PostRecord.upload_time.desc(), PostRecord.id.desc())
        else:
            raise ValueError(f"Unsupported post order: {order}")

        with self._session("retrieve posts") as session:
            page = (
                select(PostRecord.id)
                .order_by(*ordering)
                .offset(start)
                .limit(count)
                .subquery()
            )
            rows = session.exec(
                select(PostRecord, ImageRecord)
                .join(page, page.c.id == PostRecord.id)
                .outerjoin(ImageRecord, ImageRecord.post_id == PostRecord.id)
                .order_by(*ordering, ImageRecord.id)
            ).all()

            grouped: "OrderedDict[int, Post]" = OrderedDict()
            for post_record, image_record in rows:
                post = grouped.get(post_record.id)
                if post is None:
                    post = self._record_to_post(post_record, [])
                    grouped[post_record.id] = post
                if image_record is not None:
                    post.images.append(self._record_to_image(image_record))
            return list(grouped.values())

    def count_posts(self) -> int:
        with self._session("count posts") as session:
            return session.exec(select(func.count()).select_from(PostRecord)).one()

    def count_image_references(self, path: str) -> int:
        with self._session("count image references") as session:
            return session.exec(
                select(func.count()).select_from(ImageRecord).where(ImageRecord.path == path)
            ).one()

    def delete_post(self, post_id: int) -> None:
        """Delete the image rows of the post, then the post row."""
        with self._session(f"delete post {post_id}") as session:
            record = session.get(PostRecord, post_id)
            if record is None:
                raise PostNotFoundError(f"Post {post_id} not found")
            image_records = session.exec(
                select(ImageRecord).where(ImageRecord.post_id == post_id)
            ).all()
            for image_record in image_records:
                session.delete(image_record)
            session.flush()
            session.delete(record)
            session.commit()
        logger.info(f"Deleted post {post_id} and {len(image_records)} image row(s)")

    # ------------------------------------------------------------ sessions

    def create_session(self, token: str) -> None:
        with self._session("create session") as session:
            session.add(SessionRecord(token=token, auth_time=_to_unix(self.clock())))
            session.commit()

    def has_session(self, token: str) -> datetime:
        """Return the time of authentication of the token."""
        with self._session("look up session") as session:
            record = session.get(SessionRecord, token)
            if record is None:
                raise SessionNotFoundError("Session not found")
            return _from_unix(record.auth_time)

    def expire_sessions(self, life_time_sec: int) -> int:
        cutoff = _to_unix(self.clock()) - life_time_sec
        with self._session("expire sessions") as session:
            stale = session.exec(
                select(SessionRecord).where(SessionRecord.auth_time < cutoff)
            ).all()
            for record in stale:
                session.delete(record)
            session.commit()
        if stale:
            logger.info(f"Expired {len(stale)} sessions.")
        return len(stale)
