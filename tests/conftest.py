import shlex
import sys
import pytest
import pytest_asyncio
from pathlib import Path
from lsp_harness.session import DEFAULT_TIMEOUT, LanguageServerSession
from lsp_harness.transport import CONNECTION_MODES

STUB_SERVER = Path(__file__).parent / "fixtures" / "stub_server.py"


def pytest_addoption(parser: pytest.Parser):
    parser.addoption(
        "--executable",
        required=False,
        help="Command line of the language server under test. "
        "Defaults to the bundled stub server.",
    )

    parser.addoption(
        "--mode",
        type=str,
        choices=CONNECTION_MODES,
        default="pipe",
        help=f"The connection mode to use. Must be one of: {', '.join(CONNECTION_MODES)}",
    )

    parser.addoption(
        "--host",
        type=str,
        default="127.0.0.1",
        help="The host to connect to (default: 127.0.0.1)",
    )

    parser.addoption(
        "--port",
        type=int,
        default=2087,
        help="The port to connect to",
    )

    parser.addoption(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="Seconds to wait for each response",
    )


@pytest.fixture(scope="session")
def server_command(request) -> list[str]:
    executable = request.config.getoption("--executable")
    if not executable:
        return [sys.executable, str(STUB_SERVER)]

    command = shlex.split(executable)
    if not Path(command[0]).exists() and "/" in command[0]:
        pytest.exit(
            f"Error: language server not found at '{command[0]}'. "
            "Please ensure the path is correct and the file exists.",
            returncode=64,
        )
    return command


@pytest.fixture(scope="session")
def uses_stub(request) -> bool:
    return not request.config.getoption("--executable")


@pytest.fixture
def stub_command():
    """Build a stub server command line with misbehaviour flags."""

    def build(*flags: str) -> list[str]:
        return [sys.executable, str(STUB_SERVER), *flags]

    return build


@pytest_asyncio.fixture(scope="function")
async def session(request, server_command: list[str]):
    config = request.config
    session = LanguageServerSession(
        server_command,
        config.getoption("--mode"),
        config.getoption("--host"),
        config.getoption("--port"),
        timeout=config.getoption("--timeout"),
    )

    await session.start()
    yield session
    await session.exit()
