import pytest

from asset_tracker import create_app, db
from asset_tracker.config import TestConfig
from asset_tracker.models import User
from asset_tracker.principal import Principal
from asset_tracker.services import registry

PASSWORD = 'password'


@pytest.fixture
def app(tmp_path):
    # File-backed so a second connection can play a concurrent writer
    app = create_app(TestConfig, overrides={
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'test.db'}",
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app
        db.session.remove()


def make_user(username, role='user', email=None):
    user = User(username=username, email=email, role=role)
    user.set_password(PASSWORD)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin(ctx):
    return Principal.from_user(make_user('admin', role='admin'))


@pytest.fixture
def jdoe(ctx):
    return make_user('jdoe')


@pytest.fixture
def alice(ctx):
    return make_user('alice')


@pytest.fixture
def make_asset(admin):
    def _make(**fields):
        values = {'name': 'Dell Laptop', 'type': 'Laptop', 'location': 'Floor 1'}
        values.update(fields)
        return registry.create_asset(values, admin)
    return _make


def login(client, username, password=PASSWORD):
    return client.post('/login', json={'username': username, 'password': password})
