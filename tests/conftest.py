import itertools

import pytest

from clubshares import create_app
from clubshares.extensions import db
from clubshares.models import (
    AllocationStatus, ClubMember, ClubShareAllocation, ClubShareHoldingAccount,
    HoldingStatus, User, UserRole
)
from clubshares.services.notification_service import NotificationResult
from config import TestConfig

_AUTO = object()


class FakeNotifier:
    """Records every message; answers with a fixed result."""

    def __init__(self, success=True, error=None):
        self.success = success
        self.error = error
        self.sent = []

    def send(self, recipient, channel, template_type, template_data):
        self.sent.append({
            'recipient': recipient,
            'channel': channel,
            'template_type': template_type,
            'template_data': template_data,
        })
        return NotificationResult(self.success, self.error, channel)


class ExplodingNotifier:
    def send(self, recipient, channel, template_type, template_data):
        raise ConnectionError("dispatcher unreachable")


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def factory(email=None, role=UserRole.USER, activated=True, password='secret123', name=None):
        n = next(counter)
        user = User(
            name=name or f'User {n}',
            email=email or f'user{n}@example.com',
            role=role,
            is_activated=activated,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    return factory


@pytest.fixture
def admin(make_user):
    return make_user(email='admin@example.com', role=UserRole.ADMIN,
                     password='adminpass', name='Admin').id


@pytest.fixture
def regular_user(make_user):
    return make_user(email='plain@example.com', password='userpass', name='Plain User').id


@pytest.fixture
def make_member(app):
    counter = itertools.count(1)

    def factory(name=None, email=_AUTO, phone=None, user_id=None):
        n = next(counter)
        member = ClubMember(
            member_name=name or f'Member {n}',
            email=f'member{n}@example.com' if email is _AUTO else email,
            phone=phone,
            member_code=f'CM-TEST{n:04d}',
            user_id=user_id,
        )
        db.session.add(member)
        db.session.commit()
        return member

    return factory


@pytest.fixture
def make_allocation(app, admin, make_member):
    """Allocation (plus full-quantity holding account) in any status."""

    def factory(shares=100, status=AllocationStatus.ACCEPTED, member=None, batch='BATCH-1',
                with_holding=True, **member_kwargs):
        if member is None:
            member = make_member(**member_kwargs)

        allocation = ClubShareAllocation(
            club_member_id=member.id,
            allocated_shares=shares,
            allocation_status=status,
            import_batch_reference=batch,
            created_by=admin,
        )
        db.session.add(allocation)
        db.session.flush()

        if with_holding:
            db.session.add(ClubShareHoldingAccount(
                club_allocation_id=allocation.id,
                club_member_id=member.id,
                shares_quantity=shares,
                shares_released=0,
                status=HoldingStatus.HOLDING,
            ))

        db.session.commit()
        return allocation

    return factory


@pytest.fixture
def failing_notifier():
    return FakeNotifier(success=False, error='mailbox unavailable')


@pytest.fixture
def exploding_notifier():
    return ExplodingNotifier()
