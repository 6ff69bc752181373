# marketplace/infrastructure/db/unit_of_work.py

from sqlalchemy.orm import Session, sessionmaker

from marketplace.infrastructure.db.session import SessionLocal


class SqlAlchemyUnitOfWork:
    """
    Wraps one Session for the duration of one orchestrated call.
    The domain transaction may be committed at most once.
    """

    def __init__(self, session: Session):
        self.session = session
        self._committed = False

    def commit(self) -> None:
        if self._committed:
            raise RuntimeError("Unit of work already committed")
        self.session.commit()
        self._committed = True

    def rollback(self) -> None:
        self.session.rollback()

    def close(self) -> None:
        self.session.close()


class PersistenceGateway:

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def begin_unit_of_work(self) -> SqlAlchemyUnitOfWork:
        return SqlAlchemyUnitOfWork(self._session_factory())
