# proxy_manager.py
import asyncio
import logging
import signal

from aiohttp import web, ClientSession, TCPConnector, ClientTimeout, ClientError
from yarl import URL

from core.config_manager import ProxyConfig
from core.cors import negotiate, preflight_response
from utils.port_utils import check_port_availability

logger = logging.getLogger(__name__)

# Total time allowed for one backend call, body included
BACKEND_TIMEOUT = 5
# Time in-flight requests get to finish once shutdown starts
SHUTDOWN_TIMEOUT = 60.0

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def build_upstream_url(backend_url: URL, request_url: URL) -> URL:
    """
    Copies the raw path and query of the inbound request onto the backend.

    Scheme, user info, host and port come from the backend URL; its own
    path, query and fragment are replaced.
    """
    raw_path = request_url.raw_path
    if not raw_path.startswith('/'):
        raise ValueError(f"Cannot proxy request target {request_url!s}")

    query = request_url.raw_query_string
    path_qs = f"{raw_path}?{query}" if query else raw_path
    return URL(f"{backend_url.scheme}://{backend_url.raw_authority}{path_qs}", encoded=True)


def describe_error(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return f"timeout after {BACKEND_TIMEOUT} seconds"
    return str(error) or error.__class__.__name__


class InterceptProxy:
    def __init__(self, config: ProxyConfig):
        """
        Args:
            config: immutable proxy settings, only ever read here
        """
        self.config = config

        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'preflights': 0,
            'errors': 0
        }

    async def router(self, request):
        """Single route: CORS first, then forward whatever is not a preflight"""
        self.stats['total_requests'] += 1

        cors_headers, is_preflight = negotiate(
            request.headers, request.method, self.config.allowed_origin)

        if is_preflight:
            self.stats['preflights'] += 1
            logger.debug(f"✈️ Preflight for {request.path} from {request.headers.get('Origin')}")
            return preflight_response(cors_headers)

        return await self._proxy_to_backend(request, cors_headers)

    async def _proxy_to_backend(self, request, cors_headers):
        """
        Sends the request to the backend as a GET and relays status and body.

        Each call gets its own session whose connection is closed after the
        response is read.
        """
        try:
            upstream_url = build_upstream_url(self.config.backend_url, request.rel_url)
        except ValueError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Unable to build API request: {e}")
            return self._error_response("Bad internal proxy address", cors_headers)

        logger.debug(f"🔁 {request.method} {request.path_qs} -> GET {upstream_url}")

        connector = TCPConnector(force_close=True)
        async with ClientSession(
                connector=connector,
                timeout=ClientTimeout(total=BACKEND_TIMEOUT)
        ) as session:
            try:
                upstream_response = await session.get(
                    upstream_url,
                    headers={'Connection': 'close'}
                )
            except (ClientError, asyncio.TimeoutError) as e:
                self.stats['errors'] += 1
                logger.error(f"❌ Backend request failed for {request.path_qs}: {describe_error(e)}")
                return self._error_response(
                    f"Error sending API Request: {describe_error(e)}", cors_headers)

            async with upstream_response:
                response = web.StreamResponse(
                    status=upstream_response.status,
                    reason=upstream_response.reason,
                    headers=cors_headers
                )
                content_type = upstream_response.headers.get('Content-Type')
                if content_type:
                    response.headers['Content-Type'] = content_type

                await response.prepare(request)

                if request.method == 'HEAD':
                    self.stats['total_responses'] += 1
                    return response

                try:
                    async for chunk in upstream_response.content.iter_any():
                        await response.write(chunk)
                except ConnectionResetError:
                    logger.debug(f"Client went away during {request.path_qs}")
                    return response
                except (ClientError, asyncio.TimeoutError) as e:
                    # Status is already sent; drop the connection so the
                    # client sees an incomplete body, not a clean end
                    self.stats['errors'] += 1
                    logger.error(f"❌ Backend response aborted for {request.path_qs}: {describe_error(e)}")
                    if request.transport is not None:
                        request.transport.close()
                    return response

        self.stats['total_responses'] += 1
        logger.debug(f"Backend response: {upstream_response.status}")
        return response

    def _error_response(self, message, cors_headers):
        response = web.Response(
            text=message,
            status=500,
            content_type="text/plain",
            charset="utf-8"
        )
        response.headers.update(cors_headers)
        return response

    def get_full_stats(self):
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'preflights': self.stats['preflights'],
            'errors': self.stats['errors']
        }


class ProxyManager:
    """
    Runs the listener until a shutdown signal or a listener fault.

    A background task waits for whichever comes first: SIGINT/SIGTERM,
    which starts a graceful shutdown, or the abandon event raised by run()
    when serving fails. The shutdown sequence runs at most once.
    """

    def __init__(self, config: ProxyConfig):
        self.config = config
        self.proxy = None
        self.runner = None
        self.is_running = False

        self._shutdown_started = False
        self._signal_received = None
        self._abandon = None
        self._shutdown_complete = None

    def create_app(self) -> web.Application:
        self.proxy = InterceptProxy(self.config)

        app = web.Application()
        app.router.add_route('*', '/{path:.*}', self.proxy.router)
        return app

    async def run(self) -> int:
        """Serves until stopped; returns the process exit code"""
        self._signal_received = asyncio.Event()
        self._abandon = asyncio.Event()
        self._shutdown_complete = asyncio.Event()

        watcher = asyncio.create_task(self._watch_signals(), name='signal-watcher')

        logger.info("🚀 Starting server.")
        try:
            await self._serve()
        except Exception as e:
            logger.error(f"❌ FATAL: Server error, {e}.")
            self._abandon.set()
            await watcher
            await self._stop_server()
            return 1

        # The watcher has run shutdown(); wait for it to exit before returning
        await watcher
        await self._stop_server()
        logger.info("✅ Server stopped.")
        return 0

    async def _serve(self):
        await self._start_server()
        await self._shutdown_complete.wait()

    async def _start_server(self):
        runner = web.AppRunner(
            self.create_app(),
            access_log=None,
            shutdown_timeout=SHUTDOWN_TIMEOUT
        )
        await runner.setup()

        site = web.TCPSite(
            runner,
            host=self.config.bind_host or None,
            port=self.config.bind_port,
        )

        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            port_available, port_message = check_port_availability(
                self.config.bind_port, self.config.bind_host)
            if not port_available:
                logger.error(f"❌ {port_message}")
            raise

        if self._shutdown_started:
            # A signal arrived while the listener was being bound
            await runner.cleanup()
            return

        self.runner = runner
        self.is_running = True
        logger.info(f"✅ Listening on {self.config.bind_address}, proxying {self.config.backend_url}")

    def request_shutdown(self, reason='request'):
        """Asks the watcher to shut the server down gracefully"""
        if self._signal_received is None:
            logger.warning("⚠️ Shutdown requested but the proxy is not running")
            return

        logger.info(f"🛑 Received {reason}, shutting down")
        self._signal_received.set()

    async def _watch_signals(self):
        loop = asyncio.get_running_loop()
        restore = self._install_signal_handlers(loop)

        signal_wait = asyncio.create_task(self._signal_received.wait())
        abandon_wait = asyncio.create_task(self._abandon.wait())
        try:
            done, _ = await asyncio.wait(
                {signal_wait, abandon_wait},
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (signal_wait, abandon_wait):
                task.cancel()
            await asyncio.gather(signal_wait, abandon_wait, return_exceptions=True)
            restore()

        if abandon_wait in done:
            logger.debug("Signal watcher abandoned after a server error")
            return

        await self.shutdown()

    def _install_signal_handlers(self, loop):
        """Routes SIGINT/SIGTERM to request_shutdown; returns an undo callable"""
        installed = []
        previous = {}

        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
                installed.append(sig)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                previous[sig] = signal.signal(
                    sig,
                    lambda signum, frame: loop.call_soon_threadsafe(
                        self.request_shutdown, signal.Signals(signum).name)
                )
            except RuntimeError as e:
                logger.warning(f"⚠️ Unable to watch {sig.name}: {e}")

        def restore():
            for sig in installed:
                loop.remove_signal_handler(sig)
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return restore

    async def shutdown(self):
        """Graceful stop: refuse new connections, let in-flight requests finish"""
        if self._shutdown_started:
            return
        self._shutdown_started = True

        logger.info("🛑 Stopping proxy...")
        try:
            await self._stop_server()
        except Exception as e:
            logger.error(f"❌ Error shutting down server, {e}.")
        finally:
            self.is_running = False
            self._log_stats()
            if self._shutdown_complete is not None:
                self._shutdown_complete.set()

    async def _stop_server(self):
        runner, self.runner = self.runner, None
        if runner is not None:
            await runner.cleanup()

    def _log_stats(self):
        if not self.proxy:
            return

        stats = self.proxy.get_full_stats()
        logger.info(
            f"📊 Session statistics:\n"
            f"   Total requests: {stats['requests']}\n"
            f"   Total responses: {stats['responses']}\n"
            f"   Preflights: {stats['preflights']}\n"
            f"   Errors: {stats['errors']}"
        )
