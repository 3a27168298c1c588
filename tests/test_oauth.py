import asyncio
import socket
import threading
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from nube_cli.exceptions import (
    AuthorizationCancelledError,
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    CallbackServerError,
    ConfigError,
    CredentialsMissingError,
    MissingCodeError,
    NoAccessTokenError,
    StateMismatchError,
    StepOneComplete,
    TokenExchangeError,
    UsageError,
)
from nube_cli.models import ClientCredentials, FlowKind
from nube_cli.oauth import (
    AuthorizationFlow,
    AuthorizeOptions,
    BrokerFlow,
    NativeFlow,
    TokenExchanger,
    extract_code_from_url,
)

CREDS = ClientCredentials(client_id="test-client-id", client_secret="test-client-secret")


def creds_source(client):
    return CREDS


def missing_source(client):
    raise CredentialsMissingError()


def forbidden_source(client):
    raise AssertionError("credential source must not be consulted")


class TokenEndpoint:
    """MockTransport handler standing in for the provider token endpoint"""

    def __init__(self, response=None):
        self.response = response or httpx.Response(
            200,
            json={"access_token": "native-token", "token_type": "bearer", "scope": "read_products write_orders", "user_id": 4242},
        )
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


class FakeBrowser:
    """
    Records launched URLs and plays the user's browser hitting the callback.

    Launchers run in a worker thread, so the hit is scheduled on the test loop.
    """

    def __init__(self, callback_query=None, raise_error=False):
        self.callback_query = callback_query
        self.raise_error = raise_error
        self.urls = []
        self.futures = []
        self.responses = []
        try:
            self.loop = asyncio.get_running_loop()
        except RuntimeError:
            self.loop = None

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        if self.callback_query is not None:
            self.futures.append(asyncio.run_coroutine_threadsafe(self._hit(url), self.loop))
        if self.raise_error:
            raise RuntimeError("no display")
        return True

    async def _hit(self, url: str) -> None:
        query = parse_qs(urlparse(url).query)
        callback = self.callback_query(query)
        async with httpx.AsyncClient(trust_env=False) as client:
            self.responses.append(await client.get(callback))

    async def settle(self):
        await asyncio.gather(*(asyncio.wrap_future(f) for f in self.futures), return_exceptions=True)


def native_callback(port, **params):
    def build(query):
        values = dict(params)
        if values.get("state") == "echo":
            values["state"] = query["state"][0]
        return httpx.URL(f"http://127.0.0.1:{port}/callback", params=values)

    return build


def make_flow(source, browser, endpoint=None):
    exchanger = TokenExchanger(
        token_url="https://provider.test/apps/authorize/token",
        transport=httpx.MockTransport(endpoint or TokenEndpoint()),
    )
    return AuthorizationFlow(
        credential_source=source,
        browser=browser,
        exchanger=exchanger,
        auth_base_url="https://provider.test/apps",
    )


# ---------------------------------------------------------------------------
# Choosing a flow
# ---------------------------------------------------------------------------


def test_explicit_broker_skips_credential_lookup():
    flow = make_flow(forbidden_source, FakeBrowser())

    chosen = flow.choose_flow(AuthorizeOptions(broker_url="https://broker.test"))

    assert isinstance(chosen, BrokerFlow)
    assert chosen.kind == FlowKind.BROKER
    assert chosen.broker_url == "https://broker.test"


def test_stored_credentials_select_native():
    flow = make_flow(creds_source, FakeBrowser())

    chosen = flow.choose_flow(AuthorizeOptions(default_broker_url="https://default.test"))

    assert isinstance(chosen, NativeFlow)
    assert chosen.kind == FlowKind.NATIVE
    assert chosen.credentials == CREDS


def test_missing_credentials_fall_back_to_default_broker():
    flow = make_flow(missing_source, FakeBrowser())

    chosen = flow.choose_flow(AuthorizeOptions(default_broker_url="https://default.test"))

    assert isinstance(chosen, BrokerFlow)
    assert chosen.broker_url == "https://default.test"


def test_missing_credentials_without_broker_fails():
    flow = make_flow(missing_source, FakeBrowser())

    with pytest.raises(CredentialsMissingError):
        flow.choose_flow(AuthorizeOptions(default_broker_url=None))


def test_other_credential_errors_surface_as_is():
    def broken(client):
        raise ConfigError("credentials.json is missing client_id/client_secret")

    flow = make_flow(broken, FakeBrowser())

    with pytest.raises(ConfigError):
        flow.choose_flow(AuthorizeOptions(default_broker_url="https://default.test"))


# ---------------------------------------------------------------------------
# Native flow
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_native_flow_exchanges_code(free_port):
    endpoint = TokenEndpoint()
    browser = FakeBrowser(native_callback(free_port, code="server-code", state="echo"))
    flow = make_flow(creds_source, browser, endpoint)

    token = await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, default_broker_url=None))
    await browser.settle()

    assert token.access_token == "native-token"
    assert token.account_id == "4242"
    assert token.scopes == ["read_products", "write_orders"]

    launched = urlparse(browser.urls[0])
    query = parse_qs(launched.query)
    assert launched.path == "/apps/test-client-id/authorize"
    assert query["redirect_uri"] == [f"http://127.0.0.1:{free_port}/callback"]
    assert len(query["state"][0]) >= 32

    assert len(endpoint.requests) == 1
    form = parse_qs(endpoint.requests[0].content.decode())
    assert form == {
        "client_id": ["test-client-id"],
        "client_secret": ["test-client-secret"],
        "grant_type": ["authorization_code"],
        "code": ["server-code"],
    }
    assert browser.responses[0].status_code == 200


@pytest.mark.asyncio
async def test_native_state_mismatch_never_exchanges(free_port):
    endpoint = TokenEndpoint()
    browser = FakeBrowser(native_callback(free_port, code="x", state="wrong-state"))
    flow = make_flow(creds_source, browser, endpoint)

    with pytest.raises(StateMismatchError):
        await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, default_broker_url=None))
    await browser.settle()

    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_native_missing_code(free_port):
    endpoint = TokenEndpoint()
    browser = FakeBrowser(native_callback(free_port, state="echo"))
    flow = make_flow(creds_source, browser, endpoint)

    with pytest.raises(MissingCodeError):
        await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, default_broker_url=None))
    await browser.settle()

    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_provider_error_parameter(free_port):
    browser = FakeBrowser(native_callback(free_port, error="access_denied"))
    flow = make_flow(creds_source, browser)

    with pytest.raises(AuthorizationDeniedError) as exc_info:
        await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, default_broker_url=None))
    await browser.settle()

    assert exc_info.value.reason == "access_denied"


@pytest.mark.asyncio
async def test_failed_exchange_is_terminal(free_port):
    endpoint = TokenEndpoint(httpx.Response(400, json={"error": "invalid_grant"}))
    browser = FakeBrowser(native_callback(free_port, code="stale", state="echo"))
    flow = make_flow(creds_source, browser, endpoint)

    with pytest.raises(TokenExchangeError) as exc_info:
        await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, default_broker_url=None))
    await browser.settle()

    assert exc_info.value.status_code == 400
    assert len(endpoint.requests) == 1


@pytest.mark.asyncio
async def test_browser_failure_does_not_abort(free_port):
    browser = FakeBrowser(native_callback(free_port, code="c", state="echo"), raise_error=True)
    flow = make_flow(creds_source, browser)

    token = await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, default_broker_url=None))
    await browser.settle()

    assert token.access_token == "native-token"


# ---------------------------------------------------------------------------
# Broker flow
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_broker_flow_needs_no_exchange(free_port):
    endpoint = TokenEndpoint()

    def callback(query):
        return f"http://127.0.0.1:{query['port'][0]}/callback?token=broker-token&user_id=777"

    browser = FakeBrowser(callback)
    flow = make_flow(forbidden_source, browser, endpoint)

    token = await flow.authorize(
        AuthorizeOptions(callback_port=free_port, timeout=5, broker_url="https://broker.test/")
    )
    await browser.settle()

    assert token.access_token == "broker-token"
    assert token.account_id == "777"
    assert browser.urls == [f"https://broker.test/start?port={free_port}"]
    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_broker_callback_without_token(free_port):
    def callback(query):
        return f"http://127.0.0.1:{query['port'][0]}/callback?user_id=777"

    browser = FakeBrowser(callback)
    flow = make_flow(forbidden_source, browser)

    with pytest.raises(NoAccessTokenError):
        await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, broker_url="https://broker.test"))
    await browser.settle()


# ---------------------------------------------------------------------------
# Listener lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_timeout_releases_the_port(free_port):
    browser = FakeBrowser()
    flow = make_flow(creds_source, browser)

    with pytest.raises(AuthorizationTimeoutError):
        await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=0.3, default_broker_url=None))

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", free_port))


@pytest.mark.asyncio
async def test_port_in_use_fails_cleanly(free_port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", free_port))
        sock.listen(1)

        flow = make_flow(creds_source, FakeBrowser())
        with pytest.raises(CallbackServerError):
            await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, default_broker_url=None))


@pytest.mark.asyncio
async def test_second_attempt_after_failure_can_bind(free_port):
    browser = FakeBrowser(native_callback(free_port, code="x", state="bad"))
    flow = make_flow(creds_source, browser)
    with pytest.raises(StateMismatchError):
        await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, default_broker_url=None))
    await browser.settle()

    browser = FakeBrowser(native_callback(free_port, code="x", state="echo"))
    flow = make_flow(creds_source, browser)
    token = await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, default_broker_url=None))
    await browser.settle()

    assert token.access_token == "native-token"


# ---------------------------------------------------------------------------
# Token exchange
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_exchange_requires_access_token():
    exchanger = TokenExchanger(
        token_url="https://provider.test/token",
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"token_type": "bearer"})),
    )

    with pytest.raises(NoAccessTokenError):
        await exchanger.exchange(CREDS, "code")


@pytest.mark.asyncio
async def test_exchange_rejects_non_json():
    exchanger = TokenExchanger(
        token_url="https://provider.test/token",
        transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"<html>")),
    )

    with pytest.raises(TokenExchangeError):
        await exchanger.exchange(CREDS, "code")


@pytest.mark.asyncio
async def test_exchange_network_error():
    def handler(request):
        raise httpx.ConnectError("unreachable")

    exchanger = TokenExchanger(token_url="https://provider.test/token", transport=httpx.MockTransport(handler))

    with pytest.raises(TokenExchangeError):
        await exchanger.exchange(CREDS, "code")


# ---------------------------------------------------------------------------
# Slow browser launchers
# ---------------------------------------------------------------------------


class BlockingBrowser(FakeBrowser):
    """Launcher that does not return until released, like a console browser"""

    def __init__(self, callback_query=None):
        super().__init__(callback_query)
        self.release = threading.Event()

    def __call__(self, url: str) -> bool:
        launched = super().__call__(url)
        self.release.wait(5)
        return launched


@pytest.mark.asyncio
async def test_callback_is_served_while_launcher_blocks(free_port):
    browser = BlockingBrowser(native_callback(free_port, code="c", state="echo"))
    flow = make_flow(creds_source, browser)

    try:
        token = await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=5, default_broker_url=None))
        assert not browser.release.is_set()
    finally:
        browser.release.set()
    await browser.settle()

    assert token.access_token == "native-token"


@pytest.mark.asyncio
async def test_timeout_fires_while_launcher_blocks(free_port):
    browser = BlockingBrowser()
    flow = make_flow(creds_source, browser)

    started = time.monotonic()
    try:
        with pytest.raises(AuthorizationTimeoutError):
            await flow.authorize(AuthorizeOptions(callback_port=free_port, timeout=0.3, default_broker_url=None))
        elapsed = time.monotonic() - started
    finally:
        browser.release.set()

    assert elapsed < 2


# ---------------------------------------------------------------------------
# Manual and remote flows
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "pasted, code",
    [
        ("abc123", "abc123"),
        ("  abc123\n", "abc123"),
        ("http://127.0.0.1:8910/callback?code=from-url&state=x", "from-url"),
        ("https://example.test/done?state=x&code=second", "second"),
    ],
)
def test_extract_code_from_url(pasted, code):
    assert extract_code_from_url(pasted) == code


def test_extract_code_reports_provider_error():
    with pytest.raises(AuthorizationDeniedError) as exc_info:
        extract_code_from_url("http://127.0.0.1:8910/callback?error=access_denied")

    assert exc_info.value.reason == "access_denied"


@pytest.mark.parametrize("pasted", ["", "   ", "http://127.0.0.1:8910/callback?state=x"])
def test_extract_code_requires_a_code(pasted):
    with pytest.raises(MissingCodeError):
        extract_code_from_url(pasted)


@pytest.mark.asyncio
async def test_remote_step_one_returns_url_without_listening():
    endpoint = TokenEndpoint()
    browser = FakeBrowser()
    flow = make_flow(creds_source, browser, endpoint)

    with pytest.raises(StepOneComplete) as exc_info:
        await flow.authorize(AuthorizeOptions(remote=True, step=1))

    assert exc_info.value.url == "https://provider.test/apps/test-client-id/authorize"
    assert browser.urls == []
    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_remote_step_two_requires_auth_url():
    flow = make_flow(creds_source, FakeBrowser())

    with pytest.raises(UsageError):
        await flow.authorize(AuthorizeOptions(remote=True, step=2))


@pytest.mark.asyncio
async def test_auth_url_is_exchanged_directly():
    endpoint = TokenEndpoint()
    browser = FakeBrowser()
    flow = make_flow(creds_source, browser, endpoint)

    token = await flow.authorize(
        AuthorizeOptions(remote=True, step=2, auth_url="http://127.0.0.1:8910/callback?code=pasted-code")
    )

    assert token.access_token == "native-token"
    assert browser.urls == []
    form = parse_qs(endpoint.requests[0].content.decode())
    assert form["code"] == ["pasted-code"]


@pytest.mark.asyncio
async def test_manual_flow_reads_pasted_code():
    endpoint = TokenEndpoint()
    flow = make_flow(creds_source, FakeBrowser(), endpoint)
    prompts = []

    def prompt(text):
        prompts.append(text)
        return "typed-code"

    flow.code_prompt = prompt

    token = await flow.authorize(AuthorizeOptions(manual=True))

    assert token.access_token == "native-token"
    assert len(prompts) == 1
    assert parse_qs(endpoint.requests[0].content.decode())["code"] == ["typed-code"]


@pytest.mark.asyncio
async def test_manual_flow_closed_input_cancels():
    endpoint = TokenEndpoint()
    flow = make_flow(creds_source, FakeBrowser(), endpoint)

    def closed(text):
        raise EOFError()

    flow.code_prompt = closed

    with pytest.raises(AuthorizationCancelledError):
        await flow.authorize(AuthorizeOptions(manual=True))
    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_manual_flow_needs_stored_credentials():
    flow = make_flow(missing_source, FakeBrowser())

    with pytest.raises(CredentialsMissingError):
        await flow.authorize(AuthorizeOptions(manual=True, default_broker_url="https://default.test"))
