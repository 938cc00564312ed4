"""
Tests for the SQL-backed collaborators and broadcast failure handling.
"""

from decimal import Decimal

from orderflow.models import MenuItem, OrderStatus, Staff, StaffRole
from orderflow.services.broadcast import BaseBroadcastService, RedisBroadcastService
from orderflow.services.broadcast.base import EngineEvent
from orderflow.services.catalog import SqlCatalogService
from orderflow.services.engine import OrderEngine
from orderflow.services.staff import SqlStaffDirectory

from tests.helpers import KARAHI, takeaway

UNREACHABLE_REDIS = "redis://127.0.0.1:1/0"


class ExplodingBroadcaster(BaseBroadcastService):
    @property
    def provider_name(self) -> str:
        return "exploding"

    async def publish(self, event):
        raise RuntimeError("subscriber bus down")

    async def health_check(self) -> bool:
        return False


class TestSqlCollaborators:
    async def test_catalog_reads_menu_items(self, session_maker):
        async with session_maker() as session:
            async with session.begin():
                session.add(MenuItem(id=10, name="Chapli Kebab", price=Decimal("650.00"), station="GRILL"))
                session.add(MenuItem(id=11, name="Lassi", price=Decimal("250.00"), requires_prep=False,
                                     is_available=False))

        catalog = SqlCatalogService()
        async with session_maker() as session:
            kebab = await catalog.get_item(10, session)
            lassi = await catalog.get_item(11, session)
            missing = await catalog.get_item(99, session)

        assert kebab.name == "Chapli Kebab"
        assert kebab.price == Decimal("650.00")
        assert kebab.requires_prep is True
        assert lassi.available is False
        assert missing is None

    async def test_staff_directory_reads_roles(self, session_maker):
        async with session_maker() as session:
            async with session.begin():
                session.add(Staff(id=20, name="Nadia", role=StaffRole.MANAGER))
                session.add(Staff(id=21, name="Omar", role=StaffRole.MANAGER, is_active=False))

        directory = SqlStaffDirectory()
        async with session_maker() as session:
            nadia = await directory.get_staff(20, session)
            omar = await directory.get_staff(21, session)

        assert nadia.is_elevated is True
        assert omar.is_elevated is False

    async def test_engine_with_sql_collaborators(self, session_maker, settings, broadcaster):
        async with session_maker() as session:
            async with session.begin():
                session.add(MenuItem(id=10, name="Chapli Kebab", price=Decimal("650.00")))

        engine = OrderEngine(
            session_maker=session_maker,
            settings=settings,
            catalog=SqlCatalogService(),
            staff=SqlStaffDirectory(),
            broadcaster=broadcaster,
        )
        order = await takeaway(engine, 10)

        assert order.lines[0].item_name == "Chapli Kebab"
        assert order.total == Decimal("754.00")


class TestBroadcastFailures:
    async def test_redis_publish_failure_is_reported(self):
        service = RedisBroadcastService(redis_url=UNREACHABLE_REDIS, channel="test")

        result = await service.publish(EngineEvent(event_type="order.ready", payload={"order_id": 1}))

        assert result.success is False
        assert result.error_message
        assert await service.health_check() is False
        await service.close()

    async def test_lost_events_do_not_fail_the_operation(self, session_maker, settings, catalog, staff):
        engine = OrderEngine(
            session_maker=session_maker,
            settings=settings,
            catalog=catalog,
            staff=staff,
            broadcaster=ExplodingBroadcaster(),
        )
        order = await takeaway(engine, KARAHI)

        result = await engine.fire_order(order.id, staff_id=2)

        assert result.token_number == "T001"
        assert (await engine.get_order(order.id)).status == OrderStatus.ACTIVE
