"""Public package API for rmiguess."""

from rmiguess.candidates import CandidateRepository
from rmiguess.candidates import MethodCandidate
from rmiguess.client import RmiClient
from rmiguess.dispatch import DispatchStyleResolver
from rmiguess.dispatch import LegacyMode
from rmiguess.envelope import DispatchStyle
from rmiguess.errors import ConfigurationError
from rmiguess.errors import InvalidArgumentPositionError
from rmiguess.errors import MalformedResponseError
from rmiguess.errors import ProtocolConnectionError
from rmiguess.errors import RemoteCallError
from rmiguess.errors import RmiGuessError
from rmiguess.guessing import GuessingEngine
from rmiguess.guessing import GuessOutcome
from rmiguess.objid import ObjID
from rmiguess.transport import Endpoint

__all__: list[str] = [
    "CandidateRepository",
    "DispatchStyle",
    "DispatchStyleResolver",
    "Endpoint",
    "GuessOutcome",
    "GuessingEngine",
    "LegacyMode",
    "MethodCandidate",
    "ObjID",
    "RmiClient",
    "ConfigurationError",
    "InvalidArgumentPositionError",
    "MalformedResponseError",
    "ProtocolConnectionError",
    "RemoteCallError",
    "RmiGuessError",
]
