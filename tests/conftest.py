import pytest

from core.catalog import Catalog
from core.identity import IdentityVerifier
from core.ledger import OrderLedger
from core.orchestrator import OrderOrchestrator
from core.payment import PaymentVerifier
from core.settings import StoreSettings, Timeouts
from fakes import AGENT_ID, BUYER, STICKERS, STORE_WALLET, FakeFulfillment, FakeMinter, FakeWeb3


@pytest.fixture()
def settings(tmp_path):
    return StoreSettings(
        receiving_wallet=STORE_WALLET,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/orders.db",
        admin_token="operator-secret",
        timeouts=Timeouts(identity=2, payment=2, fulfillment=2, attestation=2, upload=1),
    )


@pytest.fixture()
def catalog():
    return Catalog(STICKERS)


@pytest.fixture()
def chain():
    w3 = FakeWeb3()
    w3.owners[int(AGENT_ID)] = BUYER
    return w3


@pytest.fixture()
async def ledger(settings):
    ledger = OrderLedger(settings.database_url)
    await ledger.init()
    yield ledger
    await ledger.close()


@pytest.fixture()
def fulfillment():
    return FakeFulfillment()


@pytest.fixture()
def minter():
    return FakeMinter()


@pytest.fixture()
def orchestrator(settings, catalog, chain, ledger, fulfillment, minter):
    return OrderOrchestrator(
        settings=settings,
        catalog=catalog,
        identity=IdentityVerifier(timeout=settings.timeouts.identity, w3=chain),
        payment=PaymentVerifier(
            receiving_wallet=STORE_WALLET, timeout=settings.timeouts.payment, w3=chain
        ),
        ledger=ledger,
        fulfillment=fulfillment,
        minter=minter,
    )
