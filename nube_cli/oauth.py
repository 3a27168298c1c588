"""OAuth2 authorization through a loopback callback listener

Two pathways share one flow:

    Broker: browser -> <broker>/start?port=N -> provider authorize page
            -> broker /callback (code exchanged server-side)
            -> http://127.0.0.1:N/callback?token=...&user_id=...
    Native: browser -> provider authorize page (redirect_uri, state)
            -> http://127.0.0.1:N/callback?code=...&state=...
            -> POST code to the token endpoint from here

Only one flow can run at a time: the callback port is fixed.

Machines without a usable browser or loopback use the manual pathway
instead: the authorize URL is printed, and the redirect URL (or just the
code) is pasted back, either interactively or later with --auth-url.
"""

import asyncio
import secrets
import sys
from dataclasses import dataclass, field
from typing import Callable, Optional, Union
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
from aiohttp import web
from loguru import logger

from .browser import open_browser
from .config import (
    AUTH_BASE_URL,
    CALLBACK_HOST,
    CALLBACK_PATH,
    CALLBACK_PORT,
    DEFAULT_AUTH_TIMEOUT,
    DEFAULT_BROKER_URL,
    DEFAULT_CLIENT_NAME,
    DEFAULT_HTTP_TIMEOUT,
    TOKEN_URL,
    read_client_credentials,
)
from .exceptions import (
    AuthorizationCancelledError,
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    CallbackServerError,
    CredentialsMissingError,
    MissingCodeError,
    NoAccessTokenError,
    StateMismatchError,
    StepOneComplete,
    TokenExchangeError,
    UsageError,
)
from .models import ClientCredentials, FlowKind, TokenResult

CredentialSource = Callable[[str], ClientCredentials]
BrowserLauncher = Callable[[str], bool]
CodePrompt = Callable[[str], str]


@dataclass
class AuthorizeOptions:
    """Options for one authorization attempt"""

    timeout: float = DEFAULT_AUTH_TIMEOUT
    client: str = DEFAULT_CLIENT_NAME
    broker_url: Optional[str] = None  # Explicit broker, skips credential lookup
    default_broker_url: Optional[str] = DEFAULT_BROKER_URL  # Fallback when no credentials
    callback_port: int = CALLBACK_PORT
    manual: bool = False  # Print the URL and paste the code back
    remote: bool = False  # Two-step manual flow for another machine
    step: int = 0  # 1 prints the URL, 2 exchanges --auth-url
    auth_url: str = ""  # Redirect URL (or bare code) from the browser

    @property
    def is_manual(self) -> bool:
        return self.manual or self.remote or bool(self.auth_url)


@dataclass(frozen=True)
class BrokerFlow:
    broker_url: str
    kind: FlowKind = field(default=FlowKind.BROKER, init=False)


@dataclass(frozen=True)
class NativeFlow:
    credentials: ClientCredentials
    kind: FlowKind = field(default=FlowKind.NATIVE, init=False)


Flow = Union[BrokerFlow, NativeFlow]


def extract_code_from_url(pasted: str) -> str:
    """
    Pull the authorization code out of a pasted redirect URL.

    Input without a query string is taken as the bare code.

    Raises:
        AuthorizationDeniedError: If the redirect carries an error parameter
        MissingCodeError: If nothing usable was pasted
    """
    pasted = pasted.strip()
    query = parse_qs(urlsplit(pasted).query)

    code = query.get("code", [""])[0].strip()
    if code:
        return code

    error = query.get("error", [""])[0]
    if error:
        raise AuthorizationDeniedError(error)

    if not pasted or "?" in pasted or "://" in pasted:
        raise MissingCodeError()
    return pasted


def read_pasted_code(prompt: str) -> str:
    """Prompt on stderr and read one line from stdin (EOFError on closed input)"""
    sys.stderr.write(prompt)
    sys.stderr.flush()
    line = sys.stdin.readline()
    if not line:
        raise EOFError()
    return line.strip()


class TokenExchanger:
    """Exchanges an authorization code for an access token (native flow)"""

    def __init__(
        self,
        token_url: str = TOKEN_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        self.token_url = token_url
        self.transport = transport
        self.timeout = timeout

    async def exchange(self, credentials: ClientCredentials, code: str) -> TokenResult:
        """
        POST the code to the token endpoint.

        Raises:
            TokenExchangeError: On transport failure, non-200 status or bad JSON
            NoAccessTokenError: If the response has no access_token
        """
        form = {
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "grant_type": "authorization_code",
            "code": code,
        }

        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            try:
                response = await client.post(self.token_url, data=form)
            except httpx.HTTPError as e:
                raise TokenExchangeError(f"token exchange: {e}") from e

        if response.status_code != 200:
            raise TokenExchangeError(
                f"token exchange failed (HTTP {response.status_code}): {response.text[:1000]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TokenExchangeError(f"decode token response: {e}") from e

        if not isinstance(data, dict):
            raise TokenExchangeError("decode token response: expected a JSON object")

        token = TokenResult.from_token_response(data)
        if not token.access_token:
            raise NoAccessTokenError()

        logger.debug(f"Token exchange succeeded for user {token.account_id or '?'}")
        return token


class CallbackSession:
    """
    State of one authorization attempt: the CSRF token (native only) and a
    single-slot outcome queue. The first callback wins; later ones are dropped.
    """

    def __init__(self, flow: Flow, port: int):
        self.flow = flow
        self.port = port
        self.state = secrets.token_urlsafe(32) if isinstance(flow, NativeFlow) else ""
        self.outcomes: asyncio.Queue = asyncio.Queue(maxsize=1)

    def offer(self, outcome) -> None:
        try:
            self.outcomes.put_nowait(outcome)
        except asyncio.QueueFull:
            logger.debug("Ignoring callback after the flow already has an outcome")

    async def handle_callback(self, request: web.Request) -> web.Response:
        query = request.query

        error = query.get("error")
        if error:
            self.offer(AuthorizationDeniedError(error))
            return web.Response(text="Authorization failed. You can close this window.")

        if isinstance(self.flow, BrokerFlow):
            token = query.get("token", "")
            if not token:
                self.offer(NoAccessTokenError("broker callback carried no token"))
                return web.Response(status=400, text="Missing access token.")
            self.offer(TokenResult(access_token=token, account_id=query.get("user_id", "")))
        else:
            if query.get("state") != self.state:
                self.offer(StateMismatchError())
                return web.Response(status=400, text="State mismatch. Please try again.")

            code = query.get("code", "")
            if not code:
                self.offer(MissingCodeError())
                return web.Response(status=400, text="Missing authorization code.")
            self.offer(code)

        return web.Response(text="Authorization successful! You can close this window.")


class AuthorizationFlow:
    """
    Runs one OAuth2 authorization:
    choose pathway -> listen on the loopback port and open the browser
    -> wait for the first callback (or timeout) -> exchange code (native only).

    Collaborators are injected so the flow can run against fakes.
    """

    def __init__(
        self,
        credential_source: CredentialSource = read_client_credentials,
        browser: BrowserLauncher = open_browser,
        exchanger: Optional[TokenExchanger] = None,
        auth_base_url: str = AUTH_BASE_URL,
        host: str = CALLBACK_HOST,
        code_prompt: CodePrompt = read_pasted_code,
    ):
        self.credential_source = credential_source
        self.browser = browser
        self.code_prompt = code_prompt
        self.exchanger = exchanger or TokenExchanger()
        self.auth_base_url = auth_base_url
        self.host = host

    def choose_flow(self, options: AuthorizeOptions) -> Flow:
        """Pick broker or native pathway"""
        if options.broker_url:
            logger.debug(f"Using OAuth broker {options.broker_url}")
            return BrokerFlow(options.broker_url)

        try:
            credentials = self.credential_source(options.client)
        except CredentialsMissingError:
            if options.default_broker_url:
                logger.info("No OAuth client credentials stored, using the default broker")
                return BrokerFlow(options.default_broker_url)
            raise

        return NativeFlow(credentials)

    def redirect_uri(self, port: int) -> str:
        return f"http://{self.host}:{port}{CALLBACK_PATH}"

    def authorization_url(self, session: CallbackSession) -> str:
        flow = session.flow
        if isinstance(flow, BrokerFlow):
            return f"{flow.broker_url.rstrip('/')}/start?{urlencode({'port': session.port})}"

        query = urlencode(
            {"redirect_uri": self.redirect_uri(session.port), "state": session.state}
        )
        return f"{self.auth_base_url}/{flow.credentials.client_id}/authorize?{query}"

    def manual_authorization_url(self, credentials: ClientCredentials) -> str:
        return f"{self.auth_base_url}/{credentials.client_id}/authorize"

    async def authorize(self, options: Optional[AuthorizeOptions] = None) -> TokenResult:
        """
        Run the flow to completion.

        Raises:
            StepOneComplete: After `remote` step 1 produced the URL to visit
            OAuthError: Any authorization failure, including AuthorizationTimeoutError
        """
        options = options or AuthorizeOptions()
        timeout = options.timeout if options.timeout and options.timeout > 0 else DEFAULT_AUTH_TIMEOUT

        if options.is_manual:
            return await self._authorize_manual(options, timeout)

        flow = self.choose_flow(options)
        try:
            return await asyncio.wait_for(self._run(flow, options.callback_port), timeout)
        except asyncio.TimeoutError:
            logger.error(f"No authorization callback within {timeout:.0f}s")
            raise AuthorizationTimeoutError(timeout) from None

    async def _authorize_manual(self, options: AuthorizeOptions, timeout: float) -> TokenResult:
        # Always native: the code is exchanged here with the stored credentials
        credentials = self.credential_source(options.client)
        url = self.manual_authorization_url(credentials)

        if options.remote and options.step == 1:
            raise StepOneComplete(url)

        pasted = options.auth_url.strip()
        if options.remote and options.step == 2 and not pasted:
            raise UsageError("--auth-url is required with --remote --step 2")

        if not pasted:
            logger.info(f"Visit this URL to authorize:\n{url}")
            try:
                # Waiting on the user is not bounded by the timeout
                pasted = await asyncio.to_thread(self.code_prompt, "Paste the authorization code: ")
            except EOFError:
                raise AuthorizationCancelledError() from None

        code = extract_code_from_url(pasted)
        logger.info("Exchanging authorization code...")
        try:
            return await asyncio.wait_for(self.exchanger.exchange(credentials, code), timeout)
        except asyncio.TimeoutError:
            raise AuthorizationTimeoutError(timeout) from None

    async def _launch_browser(self, url: str) -> None:
        try:
            # Console browsers block until they exit
            launched = await asyncio.to_thread(self.browser, url)
        except Exception as e:
            logger.warning(f"Could not open browser: {e}")
            return
        if launched is False:
            logger.warning("Could not open browser, open the URL above manually")

    async def _run(self, flow: Flow, port: int) -> TokenResult:
        session = CallbackSession(flow, port)

        app = web.Application()
        app.router.add_get(CALLBACK_PATH, session.handle_callback)
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        launcher: Optional[asyncio.Task] = None

        try:
            site = web.TCPSite(runner, self.host, port)
            try:
                await site.start()
            except OSError as e:
                raise CallbackServerError(
                    f"listen for callback on {self.host}:{port}: {e}"
                ) from e

            url = self.authorization_url(session)
            logger.info("Opening browser for authorization...")
            logger.info(f"If the browser doesn't open, visit this URL:\n{url}")
            launcher = asyncio.create_task(self._launch_browser(url))

            outcome = await session.outcomes.get()
            if isinstance(outcome, Exception):
                raise outcome

            if isinstance(flow, NativeFlow):
                logger.info("Authorization received. Exchanging code...")
                return await self.exchanger.exchange(flow.credentials, outcome)

            logger.info("Authorization received from broker")
            return outcome

        finally:
            if launcher is not None and not launcher.done():
                launcher.cancel()
            await runner.cleanup()
            logger.debug(f"Callback listener on port {port} closed")


async def authorize(
    options: Optional[AuthorizeOptions] = None,
    credential_source: CredentialSource = read_client_credentials,
    browser: BrowserLauncher = open_browser,
    exchanger: Optional[TokenExchanger] = None,
) -> TokenResult:
    """Run one authorization flow with the given collaborators"""
    flow = AuthorizationFlow(
        credential_source=credential_source,
        browser=browser,
        exchanger=exchanger,
    )
    return await flow.authorize(options)
