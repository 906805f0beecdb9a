from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    desc,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import Conflict


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "auth_users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(String(20), default="user")  # user, admin
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)


class EndNode(Base):
    __tablename__ = "servers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="online")
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Node credential: stays server-side, never serialized
    password: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    server_type: Mapped[str] = mapped_column(String(20), default="endnode")
    management_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_sync: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Binding(Base):
    """A VPN account provisioned for `username` on end-node `server_id`."""
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("username", "server_id", name="uq_user_server"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    server_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)  # servers.name
    port: Mapped[int] = mapped_column(Integer, default=1194)
    protocol: Mapped[str] = mapped_column(String(3), default="udp")
    ovpn_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    checksum: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class AuditEvent(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    username: Mapped[str] = mapped_column(String(255), default="")
    details: Mapped[str] = mapped_column(Text, default="")
    ip_address: Mapped[str] = mapped_column(String(64), default="")
    server_id: Mapped[str] = mapped_column(String(255), nullable=False)


class ServerLocation(Base):
    __tablename__ = "server_locations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    country: Mapped[str] = mapped_column(String(100), nullable=False)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class ServerHealth(Base):
    __tablename__ = "server_health"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    last_check: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    response_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class VPNConnection(Base):
    __tablename__ = "vpn_connections"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    server_id: Mapped[str] = mapped_column(String(255), default="")
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    disconnected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class VPNStatistic(Base):
    __tablename__ = "vpn_statistics"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    server_id: Mapped[str] = mapped_column(String(255), default="")
    bytes_in: Mapped[int] = mapped_column(BigInteger, default=0)
    bytes_out: Mapped[int] = mapped_column(BigInteger, default=0)
    duration_seconds: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Database:
    """Engine, session factory and the data-access helpers used by the services."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        kwargs = {"echo": echo}
        if not url.startswith("sqlite"):
            kwargs["pool_pre_ping"] = True
        self.engine = create_async_engine(url, **kwargs)
        self.session = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    async def init_db(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def health_check(self) -> bool:
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except (SQLAlchemyError, OSError):
            return False

    # --- Accounts ---

    async def get_account(self, phone_number: str) -> Optional[Account]:
        async with self.session() as session:
            result = await session.execute(select(Account).filter(Account.phone_number == phone_number))
            return result.scalar_one_or_none()

    async def create_account(self, phone_number: str, password_hash: str, role: str = "user") -> Account:
        now = utcnow()
        async with self.session() as session:
            account = Account(
                phone_number=phone_number,
                password_hash=password_hash,
                role=role,
                created_at=now,
                last_login=now,
                active=True,
            )
            session.add(account)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise Conflict("User with this phone number already exists") from e
            return account

    async def touch_last_login(self, account_id: int):
        async with self.session() as session:
            await session.execute(update(Account).where(Account.id == account_id).values(last_login=utcnow()))
            await session.commit()

    async def update_account(self, phone_number: str, **values) -> bool:
        async with self.session() as session:
            result = await session.execute(
                update(Account).where(Account.phone_number == phone_number).values(**values)
            )
            await session.commit()
            return result.rowcount > 0

    # --- End-nodes ---

    async def upsert_endnode(self, name: str, host: str, port: int, status: str) -> EndNode:
        async with self.session() as session:
            result = await session.execute(select(EndNode).filter(EndNode.name == name))
            node = result.scalar_one_or_none()
            if node is None:
                node = EndNode(name=name, host=host, port=port, status=status)
                session.add(node)
            else:
                node.host = host
                node.port = port
                node.status = status
                node.enabled = True
                node.updated_at = utcnow()
            await session.commit()
            return node

    async def get_endnode(self, name: str) -> Optional[EndNode]:
        async with self.session() as session:
            result = await session.execute(select(EndNode).filter(EndNode.name == name))
            return result.scalar_one_or_none()

    async def list_endnodes(self) -> Sequence[EndNode]:
        async with self.session() as session:
            result = await session.execute(select(EndNode).order_by(EndNode.name))
            return result.scalars().all()

    async def delete_endnode(self, name: str) -> bool:
        """Remove the node and every binding that points at it."""
        async with self.session() as session:
            result = await session.execute(delete(EndNode).where(EndNode.name == name))
            await session.execute(delete(Binding).where(Binding.server_id == name))
            await session.commit()
            return result.rowcount > 0

    async def update_endnode(self, name: str, **values):
        async with self.session() as session:
            await session.execute(update(EndNode).where(EndNode.name == name).values(**values))
            await session.commit()

    async def add_health(self, server_id: str, status: str, response_time_ms: int, error_message: Optional[str]):
        async with self.session() as session:
            session.add(ServerHealth(
                server_id=server_id,
                status=status,
                response_time_ms=response_time_ms,
                error_message=error_message,
                last_check=utcnow(),
            ))
            await session.execute(
                update(EndNode).where(EndNode.name == server_id).values(status=status, updated_at=utcnow())
            )
            await session.commit()

    async def latest_health(self, server_id: str) -> Optional[ServerHealth]:
        async with self.session() as session:
            result = await session.execute(
                select(ServerHealth)
                .where(ServerHealth.server_id == server_id)
                .order_by(desc(ServerHealth.last_check), desc(ServerHealth.id))
                .limit(1)
            )
            return result.scalar_one_or_none()

    # --- Bindings ---

    async def create_binding(self, username: str, server_id: str, port: int, protocol: str,
                             ovpn_path: Optional[str] = None, checksum: Optional[str] = None) -> Binding:
        async with self.session() as session:
            binding = Binding(
                username=username,
                server_id=server_id,
                port=port,
                protocol=protocol,
                ovpn_path=ovpn_path,
                checksum=checksum,
            )
            session.add(binding)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise Conflict(f"User '{username}' already exists on end-node '{server_id}'") from e
            return binding

    async def get_binding(self, username: str, server_id: str) -> Optional[Binding]:
        async with self.session() as session:
            result = await session.execute(
                select(Binding).filter(Binding.username == username, Binding.server_id == server_id)
            )
            return result.scalar_one_or_none()

    async def list_bindings(self, server_id: Optional[str] = None, username: Optional[str] = None) -> Sequence[Binding]:
        async with self.session() as session:
            query = select(Binding).order_by(Binding.username, Binding.created_at, Binding.id)
            if server_id:
                query = query.where(Binding.server_id == server_id)
            if username:
                query = query.where(Binding.username == username)
            result = await session.execute(query)
            return result.scalars().all()

    async def delete_bindings(self, username: str, server_id: Optional[str] = None) -> int:
        async with self.session() as session:
            stmt = delete(Binding).where(Binding.username == username)
            if server_id:
                stmt = stmt.where(Binding.server_id == server_id)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    async def count_active_bindings(self, server_id: str) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count(Binding.id)).where(Binding.server_id == server_id, Binding.active.is_(True))
            )
            return result.scalar_one()

    # --- Audit ---

    async def add_audit_event(self, action: str, username: str, details: str, ip_address: str, server_id: str):
        async with self.session() as session:
            session.add(AuditEvent(
                timestamp=utcnow(),
                action=action,
                username=username or "",
                details=details or "",
                ip_address=ip_address or "",
                server_id=server_id,
            ))
            await session.commit()

    async def get_audit_events(self, limit: int = 50, server_id: Optional[str] = None,
                               username: Optional[str] = None) -> Sequence[AuditEvent]:
        async with self.session() as session:
            query = select(AuditEvent).order_by(desc(AuditEvent.timestamp), desc(AuditEvent.id)).limit(limit)
            if server_id:
                query = query.where(AuditEvent.server_id == server_id)
            if username:
                query = query.where(AuditEvent.username == username)
            result = await session.execute(query)
            return result.scalars().all()

    # --- Locations ---

    async def add_location(self, country: str, city: str, country_code: str,
                           latitude: Optional[float] = None, longitude: Optional[float] = None) -> ServerLocation:
        async with self.session() as session:
            location = ServerLocation(
                country=country, city=city, country_code=country_code, latitude=latitude, longitude=longitude
            )
            session.add(location)
            await session.commit()
            return location

    async def list_locations(self) -> Sequence[ServerLocation]:
        async with self.session() as session:
            result = await session.execute(
                select(ServerLocation)
                .where(ServerLocation.enabled.is_(True))
                .order_by(ServerLocation.country, ServerLocation.city)
            )
            return result.scalars().all()

    async def location_server_count(self, location_id: int) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count(EndNode.id)).where(EndNode.location_id == location_id, EndNode.enabled.is_(True))
            )
            return result.scalar_one()

    async def location_user_count(self, location_id: int) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count(func.distinct(Binding.username)))
                .select_from(Binding)
                .join(EndNode, Binding.server_id == EndNode.name)
                .where(EndNode.location_id == location_id, Binding.active.is_(True))
            )
            return result.scalar_one()

    async def location_servers(self, location_id: int) -> Sequence[EndNode]:
        async with self.session() as session:
            result = await session.execute(
                select(EndNode)
                .where(EndNode.location_id == location_id, EndNode.enabled.is_(True))
                .order_by(EndNode.name)
            )
            return result.scalars().all()

    # --- Connections & statistics ---

    async def add_connection(self, username: str, status: str, server_id: str, ip_address: Optional[str]):
        now = utcnow()
        async with self.session() as session:
            session.add(VPNConnection(
                username=username,
                status=status,
                server_id=server_id or "",
                ip_address=ip_address,
                connected_at=now if status == "connected" else None,
                disconnected_at=now if status == "disconnected" else None,
                created_at=now,
            ))
            await session.commit()

    async def add_statistic(self, username: str, server_id: str, bytes_in: int, bytes_out: int, duration: int):
        async with self.session() as session:
            session.add(VPNStatistic(
                username=username,
                server_id=server_id or "",
                bytes_in=bytes_in,
                bytes_out=bytes_out,
                duration_seconds=duration,
                created_at=utcnow(),
            ))
            await session.commit()

    async def statistics_summary(self, username: str) -> dict:
        async with self.session() as session:
            result = await session.execute(
                select(
                    func.coalesce(func.sum(VPNStatistic.bytes_in), 0),
                    func.coalesce(func.sum(VPNStatistic.bytes_out), 0),
                    func.coalesce(func.sum(VPNStatistic.duration_seconds), 0),
                    func.count(VPNStatistic.id),
                ).where(VPNStatistic.username == username)
            )
            bytes_in, bytes_out, duration, count = result.one()

            last = await session.execute(
                select(VPNConnection.created_at)
                .where(VPNConnection.username == username, VPNConnection.status == "connected")
                .order_by(desc(VPNConnection.created_at))
                .limit(1)
            )
            last_connection = last.scalar_one_or_none()

        return {
            "username": username,
            "total_bytes_in": int(bytes_in),
            "total_bytes_out": int(bytes_out),
            "total_duration": int(duration),
            "connection_count": int(count),
            "last_connection": last_connection.isoformat() if last_connection else None,
        }

    async def connection_history(self, username: str, limit: int = 50) -> List[VPNConnection]:
        async with self.session() as session:
            result = await session.execute(
                select(VPNConnection)
                .where(VPNConnection.username == username)
                .order_by(desc(VPNConnection.created_at), desc(VPNConnection.id))
                .limit(limit)
            )
            return list(result.scalars().all())
