# File: src/qrpark/infrastructure/repositories.py
"""
Repository Pattern Implementation for the QR Parking System

Repositories give the application layer a collection-like view of owners,
lots, pricing periods, spaces, sessions and payment records while hiding
SQLAlchemy. The Unit of Work wraps one database transaction.

State transitions that must be atomic are exposed as compare-and-set
methods (occupy_if_available, complete_if_active, ...) returning whether
the row was changed. Two database constraints back them up:
- at most one active session per space (partial unique index)
- at most one payment record per session (unique column)

Storage Implementations:
- SQLAlchemyRepository - for relational databases (SQLite, PostgreSQL)
- RedisPricingCache - read-through cache for resolved pricing configs
"""

from abc import ABC, abstractmethod
from typing import Type, TypeVar, Generic, Optional, List, Callable
from datetime import datetime, timezone
import json
import logging
from uuid import uuid4

from sqlalchemy import (
    create_engine, event, text, BigInteger, Boolean, Column, DateTime,
    ForeignKey, Index, Integer, String, UniqueConstraint, func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
import redis

from ..domain.models import (
    LotStatus, PaymentMethod, PaymentStatus, PricingConfig, SessionStatus,
    SpaceStatus, TimePeriod,
)
from ..domain.aggregates import (
    MaxPricingPeriod, Owner, ParkingLot, ParkingSession, ParkingSpace, PaymentRecord,
)

# Type variables for generic repositories
T = TypeVar('T')  # Entity type
ID = TypeVar('ID')  # ID type (uuid string)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T, ID]):
    """Generic repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        pass

    @abstractmethod
    def get(self, id: ID) -> Optional[T]:
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        pass

    @abstractmethod
    def delete(self, id: ID) -> bool:
        pass


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """Unit of Work pattern for transaction management"""

    @abstractmethod
    def __enter__(self):
        pass

    @abstractmethod
    def __exit__(self, exc_type, exc_val, exc_tb):
        pass

    @abstractmethod
    def commit(self):
        pass

    @abstractmethod
    def rollback(self):
        pass

    @property
    @abstractmethod
    def owners(self) -> 'OwnerRepository':
        pass

    @property
    @abstractmethod
    def parking_lots(self) -> 'ParkingLotRepository':
        pass

    @property
    @abstractmethod
    def pricing_periods(self) -> 'MaxPricingPeriodRepository':
        pass

    @property
    @abstractmethod
    def parking_spaces(self) -> 'ParkingSpaceRepository':
        pass

    @property
    @abstractmethod
    def parking_sessions(self) -> 'ParkingSessionRepository':
        pass

    @property
    @abstractmethod
    def payment_records(self) -> 'PaymentRecordRepository':
        pass


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class OwnerModel(Base):
    """SQLAlchemy model for Owner"""
    __tablename__ = 'owners'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name = Column(String(100), nullable=False)
    pricing_unit_minutes = Column(Integer, nullable=False, default=60)
    pricing_amount = Column(Integer, nullable=False, default=300)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class ParkingLotModel(Base):
    """SQLAlchemy model for ParkingLot"""
    __tablename__ = 'parking_lots'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    owner_id = Column(String(36), ForeignKey('owners.id'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    address = Column(String(255), default="")
    total_spaces = Column(Integer, nullable=False, default=10)
    status = Column(String(20), nullable=False, default=LotStatus.ACTIVE.value)

    # Lot-level overrides, NULL falls back to the owner's defaults
    pricing_unit_minutes = Column(Integer, nullable=True)
    pricing_amount = Column(Integer, nullable=True)
    max_daily_amount = Column(Integer, nullable=True)
    max_daily_amount_enabled = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class MaxPricingPeriodModel(Base):
    """SQLAlchemy model for a lot's time-period price ceiling"""
    __tablename__ = 'max_pricing_periods'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    parking_lot_id = Column(String(36), ForeignKey('parking_lots.id'), nullable=False, index=True)
    start_hour = Column(Integer, nullable=False)
    end_hour = Column(Integer, nullable=False)
    max_amount = Column(Integer, nullable=False)
    sort_order = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=_utcnow)


class ParkingSpaceModel(Base):
    """SQLAlchemy model for ParkingSpace"""
    __tablename__ = 'parking_spaces'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    parking_lot_id = Column(String(36), ForeignKey('parking_lots.id'), nullable=False, index=True)
    space_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=SpaceStatus.AVAILABLE.value)
    qr_code = Column(String(64), nullable=False, unique=True, index=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint('parking_lot_id', 'space_number', name='uq_space_lot_number'),
    )


class ParkingSessionModel(Base):
    """SQLAlchemy model for ParkingSession (the parking record)"""
    __tablename__ = 'parking_sessions'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    space_id = Column(String(36), ForeignKey('parking_spaces.id'), nullable=False, index=True)
    parking_lot_id = Column(String(36), ForeignKey('parking_lots.id'), nullable=False, index=True)
    space_number = Column(Integer, nullable=False)
    entry_time = Column(BigInteger, nullable=False)
    exit_time = Column(BigInteger, nullable=True)
    status = Column(String(20), nullable=False, default=SessionStatus.ACTIVE.value)
    session_token = Column(String(64), nullable=False, unique=True, index=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index(
            'uq_session_active_space',
            'space_id',
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class PaymentRecordModel(Base):
    """SQLAlchemy model for PaymentRecord"""
    __tablename__ = 'payment_records'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    session_id = Column(String(36), ForeignKey('parking_sessions.id'), nullable=False, unique=True)
    parking_lot_id = Column(String(36), ForeignKey('parking_lots.id'), nullable=False, index=True)
    space_number = Column(Integer, nullable=False)
    entry_time = Column(BigInteger, nullable=False)
    exit_time = Column(BigInteger, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    payment_method = Column(String(20), nullable=False)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    transaction_id = Column(String(64), nullable=False, unique=True)
    provider_payment_id = Column(String(128), nullable=True)
    is_demo = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=_utcnow, index=True)


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

class Mapper:
    """Maps between domain models and ORM models"""

    @staticmethod
    def owner_to_orm(owner: Owner) -> OwnerModel:
        return OwnerModel(
            id=owner.id,
            name=owner.name,
            pricing_unit_minutes=owner.pricing_unit_minutes,
            pricing_amount=owner.pricing_amount,
        )

    @staticmethod
    def owner_to_domain(model: OwnerModel) -> Owner:
        return Owner(
            id=model.id,
            name=model.name,
            pricing_unit_minutes=model.pricing_unit_minutes,
            pricing_amount=model.pricing_amount,
        )

    @staticmethod
    def parking_lot_to_orm(lot: ParkingLot) -> ParkingLotModel:
        return ParkingLotModel(
            id=lot.id,
            owner_id=lot.owner_id,
            name=lot.name,
            address=lot.address,
            total_spaces=lot.total_spaces,
            status=lot.status.value,
            pricing_unit_minutes=lot.pricing_unit_minutes,
            pricing_amount=lot.pricing_amount,
            max_daily_amount=lot.max_daily_amount,
            max_daily_amount_enabled=lot.max_daily_amount_enabled,
        )

    @staticmethod
    def parking_lot_to_domain(model: ParkingLotModel) -> ParkingLot:
        return ParkingLot(
            id=model.id,
            owner_id=model.owner_id,
            name=model.name,
            address=model.address or "",
            total_spaces=model.total_spaces,
            status=LotStatus(model.status),
            pricing_unit_minutes=model.pricing_unit_minutes,
            pricing_amount=model.pricing_amount,
            max_daily_amount=model.max_daily_amount,
            max_daily_amount_enabled=bool(model.max_daily_amount_enabled),
        )

    @staticmethod
    def pricing_period_to_orm(entity: MaxPricingPeriod) -> MaxPricingPeriodModel:
        return MaxPricingPeriodModel(
            id=entity.id,
            parking_lot_id=entity.lot_id,
            start_hour=entity.period.start_hour,
            end_hour=entity.period.end_hour,
            max_amount=entity.period.max_amount,
        )

    @staticmethod
    def pricing_period_to_domain(model: MaxPricingPeriodModel) -> MaxPricingPeriod:
        return MaxPricingPeriod(
            id=model.id,
            lot_id=model.parking_lot_id,
            period=TimePeriod(model.start_hour, model.end_hour, model.max_amount),
        )

    @staticmethod
    def parking_space_to_orm(space: ParkingSpace) -> ParkingSpaceModel:
        return ParkingSpaceModel(
            id=space.id,
            parking_lot_id=space.lot_id,
            space_number=space.space_number,
            status=space.status,
            qr_code=space.qr_code,
        )

    @staticmethod
    def parking_space_to_domain(model: ParkingSpaceModel) -> ParkingSpace:
        return ParkingSpace(
            id=model.id,
            lot_id=model.parking_lot_id,
            space_number=model.space_number,
            qr_code=model.qr_code,
            is_occupied=model.status == SpaceStatus.OCCUPIED.value,
        )

    @staticmethod
    def parking_session_to_orm(session: ParkingSession) -> ParkingSessionModel:
        return ParkingSessionModel(
            id=session.id,
            space_id=session.space_id,
            parking_lot_id=session.lot_id,
            space_number=session.space_number,
            entry_time=session.entry_time_ms,
            exit_time=session.exit_time_ms,
            status=session.status.value,
            session_token=session.session_token,
        )

    @staticmethod
    def parking_session_to_domain(model: ParkingSessionModel) -> ParkingSession:
        return ParkingSession(
            id=model.id,
            space_id=model.space_id,
            lot_id=model.parking_lot_id,
            space_number=model.space_number,
            entry_time_ms=model.entry_time,
            exit_time_ms=model.exit_time,
            status=SessionStatus(model.status),
            session_token=model.session_token,
        )

    @staticmethod
    def payment_record_to_orm(record: PaymentRecord) -> PaymentRecordModel:
        return PaymentRecordModel(
            id=record.id,
            session_id=record.session_id,
            parking_lot_id=record.lot_id,
            space_number=record.space_number,
            entry_time=record.entry_time_ms,
            exit_time=record.exit_time_ms,
            duration_minutes=record.duration_minutes,
            amount=record.amount,
            payment_method=record.payment_method.value,
            payment_status=record.payment_status.value,
            transaction_id=record.transaction_id,
            provider_payment_id=record.provider_payment_id,
            is_demo=record.is_demo,
            created_at=record.created_at,
        )

    @staticmethod
    def payment_record_to_domain(model: PaymentRecordModel) -> PaymentRecord:
        return PaymentRecord(
            id=model.id,
            session_id=model.session_id,
            lot_id=model.parking_lot_id,
            space_number=model.space_number,
            entry_time_ms=model.entry_time,
            exit_time_ms=model.exit_time,
            duration_minutes=model.duration_minutes,
            amount=model.amount,
            payment_method=PaymentMethod(model.payment_method),
            payment_status=PaymentStatus(model.payment_status),
            transaction_id=model.transaction_id,
            provider_payment_id=model.provider_payment_id,
            is_demo=bool(model.is_demo),
            created_at=model.created_at,
        )


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(Repository[T, str], ABC):
    """Base SQLAlchemy repository"""

    # Columns a plain update() never touches
    immutable_columns = frozenset({'id', 'created_at', 'updated_at'})

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def model_class(self) -> Type[Base]:
        pass

    @abstractmethod
    def to_domain(self, model: Base) -> T:
        pass

    @abstractmethod
    def to_orm(self, entity: T) -> Base:
        pass

    def add(self, entity: T) -> T:
        try:
            model = self.to_orm(entity)
            self.session.add(model)
            self.session.flush()
            self._logger.debug(f"Added entity: {model.id}")
            return entity
        except IntegrityError as e:
            self._logger.error(f"Integrity error adding entity: {e}")
            raise
        except SQLAlchemyError as e:
            self._logger.error(f"Database error adding entity: {e}")
            raise

    def get(self, id: str) -> Optional[T]:
        try:
            model = self.session.get(self.model_class, str(id))
            if model:
                return self.to_domain(model)
            return None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting entity {id}: {e}")
            raise

    def update(self, entity: T) -> T:
        """Copy every column of the entity onto the stored row, NULLs included"""
        try:
            model = self.session.get(self.model_class, str(entity.id))
            if not model:
                raise ValueError(f"Entity {entity.id} not found")

            updated_model = self.to_orm(entity)
            for column in self.model_class.__table__.columns:
                if column.name not in self.immutable_columns:
                    setattr(model, column.name, getattr(updated_model, column.name, None))

            self.session.flush()
            self._logger.debug(f"Updated entity: {entity.id}")
            return entity
        except SQLAlchemyError as e:
            self._logger.error(f"Database error updating entity: {e}")
            raise

    def delete(self, id: str) -> bool:
        try:
            model = self.session.get(self.model_class, str(id))
            if model:
                self.session.delete(model)
                self.session.flush()
                self._logger.debug(f"Deleted entity: {id}")
                return True
            return False
        except SQLAlchemyError as e:
            self._logger.error(f"Database error deleting entity {id}: {e}")
            raise

    def _compare_and_set(self, *criteria, **values) -> bool:
        """UPDATE ... WHERE criteria; True when exactly the guarded row changed"""
        try:
            values['updated_at'] = _utcnow()
            changed = self.session.query(self.model_class).filter(*criteria).update(
                values, synchronize_session=False
            )
            self.session.flush()
            return changed > 0
        except SQLAlchemyError as e:
            self._logger.error(f"Database error in conditional update: {e}")
            raise


class OwnerRepository(SQLAlchemyRepository[Owner]):
    """Repository for owners and their default pricing"""

    @property
    def model_class(self) -> Type[Base]:
        return OwnerModel

    def to_domain(self, model: OwnerModel) -> Owner:
        return Mapper.owner_to_domain(model)

    def to_orm(self, entity: Owner) -> OwnerModel:
        return Mapper.owner_to_orm(entity)


class ParkingLotRepository(SQLAlchemyRepository[ParkingLot]):
    """Repository for parking lots"""

    @property
    def model_class(self) -> Type[Base]:
        return ParkingLotModel

    def to_domain(self, model: ParkingLotModel) -> ParkingLot:
        return Mapper.parking_lot_to_domain(model)

    def to_orm(self, entity: ParkingLot) -> ParkingLotModel:
        return Mapper.parking_lot_to_orm(entity)

    def find_by_owner(self, owner_id: str) -> List[ParkingLot]:
        try:
            models = self.session.query(ParkingLotModel).filter(
                ParkingLotModel.owner_id == owner_id
            ).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding lots by owner: {e}")
            raise


class MaxPricingPeriodRepository(SQLAlchemyRepository[MaxPricingPeriod]):
    """Repository for time-period price ceilings, kept in insertion order"""

    immutable_columns = frozenset({'id', 'created_at', 'sort_order'})

    @property
    def model_class(self) -> Type[Base]:
        return MaxPricingPeriodModel

    def to_domain(self, model: MaxPricingPeriodModel) -> MaxPricingPeriod:
        return Mapper.pricing_period_to_domain(model)

    def to_orm(self, entity: MaxPricingPeriod) -> MaxPricingPeriodModel:
        return Mapper.pricing_period_to_orm(entity)

    def add(self, entity: MaxPricingPeriod) -> MaxPricingPeriod:
        try:
            last = self.session.query(func.max(MaxPricingPeriodModel.sort_order)).filter(
                MaxPricingPeriodModel.parking_lot_id == entity.lot_id
            ).scalar()
            model = self.to_orm(entity)
            model.sort_order = (last or 0) + 1
            self.session.add(model)
            self.session.flush()
            return entity
        except SQLAlchemyError as e:
            self._logger.error(f"Database error adding pricing period: {e}")
            raise

    def find_by_lot(self, lot_id: str) -> List[MaxPricingPeriod]:
        try:
            models = self.session.query(MaxPricingPeriodModel).filter(
                MaxPricingPeriodModel.parking_lot_id == lot_id
            ).order_by(MaxPricingPeriodModel.sort_order).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding pricing periods: {e}")
            raise


class ParkingSpaceRepository(SQLAlchemyRepository[ParkingSpace]):
    """Repository for parking spaces"""

    @property
    def model_class(self) -> Type[Base]:
        return ParkingSpaceModel

    def to_domain(self, model: ParkingSpaceModel) -> ParkingSpace:
        return Mapper.parking_space_to_domain(model)

    def to_orm(self, entity: ParkingSpace) -> ParkingSpaceModel:
        return Mapper.parking_space_to_orm(entity)

    def find_by_qr_code(self, qr_code: str) -> Optional[ParkingSpace]:
        try:
            model = self.session.query(ParkingSpaceModel).filter(
                ParkingSpaceModel.qr_code == qr_code
            ).first()
            return self.to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding space by QR code: {e}")
            raise

    def find_by_lot(self, lot_id: Optional[str] = None) -> List[ParkingSpace]:
        """Spaces ordered by number; every lot when lot_id is None"""
        try:
            query = self.session.query(ParkingSpaceModel)
            if lot_id is not None:
                query = query.filter(ParkingSpaceModel.parking_lot_id == lot_id)
            models = query.order_by(
                ParkingSpaceModel.parking_lot_id, ParkingSpaceModel.space_number
            ).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding spaces: {e}")
            raise

    def occupy_if_available(self, space_id: str) -> bool:
        return self._compare_and_set(
            ParkingSpaceModel.id == space_id,
            ParkingSpaceModel.status == SpaceStatus.AVAILABLE.value,
            status=SpaceStatus.OCCUPIED.value,
        )

    def release_if_occupied(self, space_id: str) -> bool:
        return self._compare_and_set(
            ParkingSpaceModel.id == space_id,
            ParkingSpaceModel.status == SpaceStatus.OCCUPIED.value,
            status=SpaceStatus.AVAILABLE.value,
        )


class ParkingSessionRepository(SQLAlchemyRepository[ParkingSession]):
    """Repository for parking sessions"""

    @property
    def model_class(self) -> Type[Base]:
        return ParkingSessionModel

    def to_domain(self, model: ParkingSessionModel) -> ParkingSession:
        return Mapper.parking_session_to_domain(model)

    def to_orm(self, entity: ParkingSession) -> ParkingSessionModel:
        return Mapper.parking_session_to_orm(entity)

    def find_by_token(self, session_token: str) -> Optional[ParkingSession]:
        try:
            model = self.session.query(ParkingSessionModel).filter(
                ParkingSessionModel.session_token == session_token
            ).first()
            return self.to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding session by token: {e}")
            raise

    def find_active_by_space(self, space_id: str) -> Optional[ParkingSession]:
        try:
            model = self.session.query(ParkingSessionModel).filter(
                ParkingSessionModel.space_id == space_id,
                ParkingSessionModel.status == SessionStatus.ACTIVE.value,
            ).first()
            return self.to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding active session: {e}")
            raise

    def find_active(self, lot_id: Optional[str] = None) -> List[ParkingSession]:
        try:
            query = self.session.query(ParkingSessionModel).filter(
                ParkingSessionModel.status == SessionStatus.ACTIVE.value
            )
            if lot_id is not None:
                query = query.filter(ParkingSessionModel.parking_lot_id == lot_id)
            return [self.to_domain(model) for model in query.all()]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error listing active sessions: {e}")
            raise

    def complete_if_active(self, session_id: str, exit_time_ms: int) -> bool:
        return self._compare_and_set(
            ParkingSessionModel.id == session_id,
            ParkingSessionModel.status == SessionStatus.ACTIVE.value,
            status=SessionStatus.COMPLETED.value,
            exit_time=exit_time_ms,
        )


class PaymentRecordRepository(SQLAlchemyRepository[PaymentRecord]):
    """Append-only repository for payment records"""

    @property
    def model_class(self) -> Type[Base]:
        return PaymentRecordModel

    def to_domain(self, model: PaymentRecordModel) -> PaymentRecord:
        return Mapper.payment_record_to_domain(model)

    def to_orm(self, entity: PaymentRecord) -> PaymentRecordModel:
        return Mapper.payment_record_to_orm(entity)

    def find_recent(self, limit: int = 100) -> List[PaymentRecord]:
        try:
            models = self.session.query(PaymentRecordModel).order_by(
                PaymentRecordModel.created_at.desc(), PaymentRecordModel.exit_time.desc()
            ).limit(limit).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error listing payment records: {e}")
            raise


# ============================================================================
# SQLALCHEMY UNIT OF WORK
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work implementation with SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self.session = self.session_factory()

        self._owners = OwnerRepository(self.session)
        self._parking_lots = ParkingLotRepository(self.session)
        self._pricing_periods = MaxPricingPeriodRepository(self.session)
        self._parking_spaces = ParkingSpaceRepository(self.session)
        self._parking_sessions = ParkingSessionRepository(self.session)
        self._payment_records = PaymentRecordRepository(self.session)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.debug(f"Rolling back after {exc_type.__name__}: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self.session.close()

    def commit(self):
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise

    def rollback(self):
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    @property
    def owners(self) -> OwnerRepository:
        return self._owners

    @property
    def parking_lots(self) -> ParkingLotRepository:
        return self._parking_lots

    @property
    def pricing_periods(self) -> MaxPricingPeriodRepository:
        return self._pricing_periods

    @property
    def parking_spaces(self) -> ParkingSpaceRepository:
        return self._parking_spaces

    @property
    def parking_sessions(self) -> ParkingSessionRepository:
        return self._parking_sessions

    @property
    def payment_records(self) -> PaymentRecordRepository:
        return self._payment_records


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

def _use_immediate_transactions(engine: Engine) -> None:
    """
    Make every SQLite transaction take the write lock when it begins

    pysqlite's own transaction handling is switched off so that SQLAlchemy's
    begin event can emit BEGIN IMMEDIATE. Two writers then serialize at
    BEGIN instead of failing at COMMIT.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


class RepositoryFactory:
    """Factory for creating engines and units of work"""

    @staticmethod
    def create_engine(database_url: str, echo: bool = False) -> Engine:
        """Create an engine and the schema if it does not exist yet"""
        if database_url.startswith("sqlite"):
            options = {"connect_args": {"check_same_thread": False, "timeout": 30}}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every session sees an empty database
                options["poolclass"] = StaticPool
            engine = create_engine(database_url, echo=echo, **options)
            _use_immediate_transactions(engine)
        else:
            engine = create_engine(database_url, echo=echo, pool_pre_ping=True)

        Base.metadata.create_all(bind=engine)
        return engine

    @staticmethod
    def create_uow_factory(database_url: str, echo: bool = False) -> Callable[[], SQLAlchemyUnitOfWork]:
        """Each call of the returned factory yields a fresh Unit of Work"""
        engine = RepositoryFactory.create_engine(database_url, echo=echo)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        return lambda: SQLAlchemyUnitOfWork(SessionLocal)


# ============================================================================
# CACHING (Decorator Pattern)
# ============================================================================

class RedisPricingCache:
    """
    Read-through cache of resolved pricing configs, keyed by lot id

    Any pricing mutation must call invalidate() for the affected lot.
    Cache failures degrade to a miss; the database stays the source of truth.
    """

    cache_prefix = "qrpark:pricing:"

    def __init__(self, cache_client, ttl_seconds: int = 300):
        self.cache = cache_client
        self.ttl_seconds = ttl_seconds
        self._logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 300) -> 'RedisPricingCache':
        return cls(redis.Redis.from_url(redis_url), ttl_seconds=ttl_seconds)

    def _cache_key(self, lot_id: str) -> str:
        return f"{self.cache_prefix}{lot_id}"

    def get(self, lot_id: str) -> Optional[PricingConfig]:
        try:
            cached = self.cache.get(self._cache_key(lot_id))
        except redis.RedisError as e:
            self._logger.warning(f"Pricing cache read failed for lot {lot_id}: {e}")
            return None
        if not cached:
            return None
        self._logger.debug(f"Cache hit for lot {lot_id}")
        return PricingConfig.from_dict(json.loads(cached))

    def set(self, lot_id: str, config: PricingConfig) -> None:
        try:
            self.cache.set(self._cache_key(lot_id), json.dumps(config.to_dict()), ex=self.ttl_seconds)
        except redis.RedisError as e:
            self._logger.warning(f"Pricing cache write failed for lot {lot_id}: {e}")

    def invalidate(self, lot_id: str) -> None:
        try:
            self.cache.delete(self._cache_key(lot_id))
        except redis.RedisError as e:
            self._logger.warning(f"Pricing cache invalidation failed for lot {lot_id}: {e}")
