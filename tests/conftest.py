import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ["JWT_SECRET"] = "test-secret"

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from adoption_payments import gateway, signing
from adoption_payments.config import Settings
from adoption_payments.database import Base, get_db
from adoption_payments.fio_service import FioService
from adoption_payments.main import create_app
from adoption_payments.models import Animal
from adoption_payments.stripe_service import StripeService

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

PASSPHRASE = "gp-test-pass"


@pytest.fixture(scope="session")
def key_pair():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.BestAvailableEncryption(PASSPHRASE.encode()),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def animals(db):
    db.add_all([
        Animal(id="dog-42", name="Rex", active=True),
        Animal(id="cat-7", name="Micka", active=True),
        Animal(id="old-1", name="Bobik", active=False),
    ])
    db.commit()


@pytest.fixture
def settings(key_pair):
    private_pem, public_pem = key_pair
    return Settings(
        database_url=SQLALCHEMY_DATABASE_URL,
        jwt_secret="test-secret",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test",
        frontend_base_url="http://frontend.test",
        backend_base_url="http://api.test",
        gp_merchant_number="1234567890",
        gp_gateway_base="https://gateway.test/pay/order.do",
        gp_private_key_pem=private_pem,
        gp_private_key_pass=PASSPHRASE,
        gp_public_key_pem=public_pem,
    )


@pytest.fixture
def stripe_client(mocker):
    client = mocker.Mock()
    client.checkout.sessions.create.return_value = mocker.Mock(
        id="sess_abc", url="https://checkout.stripe.test/sess_abc"
    )
    return client


@pytest.fixture
def stripe_service(stripe_client):
    return StripeService("", webhook_secret="whsec_test", client=stripe_client)


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def mailer(mocker):
    return mocker.Mock()


@pytest.fixture
def fio_service(mocker):
    return FioService("fio-token", base_url="https://fio.test/v1/rest", session=mocker.Mock())


@pytest.fixture
def fastapi_app(settings, stripe_service, mailer, fio_service):
    fastapi_app = create_app(
        settings=settings, stripe_service=stripe_service, mailer=mailer, fio_service=fio_service
    )

    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(fastapi_app):
    with TestClient(fastapi_app) as c:
        yield c


@pytest.fixture
def passphrase():
    return PASSPHRASE


@pytest.fixture
def gateway_callback(key_pair, passphrase):
    """Builds callback params signed the way the gateway signs them."""
    private_pem, _ = key_pair

    def build(**fields):
        canonical = signing.canonicalize(gateway.signed_response_params(fields))
        return dict(fields, DIGEST=signing.sign(canonical, private_pem, passphrase))

    return build
