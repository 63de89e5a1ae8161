"""Common roll helpers: errors, retries, polling, settings and logging."""
# pylint: disable=too-many-arguments
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, fields
from itertools import chain
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union

import yaml
from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

LOGGER = logging.getLogger(__name__)
LOG_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
T = TypeVar("T")


class RollError(Exception):
    """Parent class for all the errors that must stop a roll."""


class PreconditionError(RollError):
    """Risen when the roll can't start or continue with the given inputs or cluster state."""


class TopologyError(RollError):
    """Risen when the zone topology of the node pool is not what the roll requires."""


class RetriesExhausted(RollError):
    """Risen when an API operation kept failing after all the retries."""


class WaitTimeout(RollError):
    """Risen when a polling wait went past its configured ceiling."""


class RollCancelled(RollError):
    """Risen when a wait was interrupted by the cancellation signal."""


class TransientApiError(Exception):
    """Parent class for API errors that are worth retrying."""

    def __init__(self, message: str, code: Optional[Union[int, str]] = None):
        """Init."""
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class RetryOpts:
    """How API calls are retried."""

    tries: int = 12
    delay_seconds: float = 8.0
    exceptions: Tuple[Type[BaseException], ...] = (TransientApiError,)


@dataclass(frozen=True)
class PollOpts:
    """Intervals and ceiling of the polling waits."""

    zone_labels_interval_seconds: float = 5.0
    ready_nodes_interval_seconds: float = 20.0
    scale_down_interval_seconds: float = 30.0
    scale_down_settle_seconds: float = 60.0
    discovery_interval_seconds: float = 10.0
    # None means wait forever
    timeout_seconds: Optional[float] = None


@dataclass(frozen=True)
class LabelKeys:
    """Node label keys the roll reads and writes."""

    role: str = "role"
    zone: str = "topology.kubernetes.io/zone"
    retiring: str = "retiring"


@dataclass(frozen=True)
class Settings:
    """Tunables of the roll, usually loaded from a yaml file."""

    retry: RetryOpts = field(default_factory=RetryOpts)
    poll: PollOpts = field(default_factory=PollOpts)
    labels: LabelKeys = field(default_factory=LabelKeys)
    snapshots_file: Path = Path("./snapshots.json")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "Settings":
        """Build the settings from a parsed config, keeping the defaults for anything missing.

        Example of config:
        ```
        retry:
          tries: 12
          delay_seconds: 8
        poll:
          ready_nodes_interval_seconds: 20
        labels:
          role: role
        snapshots_file: ./snapshots.json
        ```
        """
        sections = {"retry": RetryOpts, "poll": PollOpts, "labels": LabelKeys}
        kwargs: Dict[str, Any] = {}
        for key, value in config.items():
            if key in sections:
                kwargs[key] = _build_section(sections[key], key, value or {})
            elif key == "snapshots_file":
                kwargs[key] = Path(value).expanduser()
            else:
                LOGGER.warning("Ignoring unknown config key '%s'", key)

        return cls(**kwargs)

    @classmethod
    def from_file(cls, config_file: Optional[Path], raises: bool = True) -> "Settings":
        """Load the settings from the given yaml file, all defaults if there's no file."""
        if config_file is None:
            return cls()

        LOGGER.debug("Loading settings from %s", config_file)
        return cls.from_dict(load_yaml_config(config_file=config_file, raises=raises))


def _build_section(section_cls: Type[T], name: str, values: Dict[str, Any]) -> T:
    known = {section_field.name for section_field in fields(section_cls)}  # type: ignore[arg-type]
    for key in set(values) - known:
        LOGGER.warning("Ignoring unknown config key '%s.%s'", name, key)

    return section_cls(**{key: value for key, value in values.items() if key in known})


def load_yaml_config(config_file: Path, raises: bool = True) -> Dict[str, Any]:
    """Parse a yaml config file, returning an empty dict for an empty file.

    If raises is False, a missing or unparseable file is logged and treated as empty.
    """
    try:
        with open(config_file, encoding="utf-8") as config_fd:
            config = yaml.safe_load(config_fd)
    except (OSError, yaml.YAMLError) as error:
        if raises:
            raise PreconditionError(f"Unable to load config file {config_file}: {error}") from error

        LOGGER.debug("Could not load config file %s, using defaults: %s", config_file, error)
        return {}

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise PreconditionError(f"Config file {config_file} must contain a mapping, got: {config}")

    return config


class Waiter:
    """Blocking polling waits that can be cancelled through a shared event."""

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        """Init."""
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()

    def sleep(self, seconds: float) -> None:
        """Sleep for the given seconds, raising RollCancelled as soon as the cancel event is set."""
        if self.cancel_event.wait(timeout=seconds):
            raise RollCancelled("Cancellation requested, stopping the current wait")

    def wait_for(
        self,
        check: Callable[[], bool],
        description: str,
        interval_seconds: float,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        """Poll check() every interval_seconds until it returns True."""
        start_time = time.time()
        while True:
            if check():
                return

            elapsed = time.time() - start_time
            if timeout_seconds is not None and elapsed >= timeout_seconds:
                raise WaitTimeout(f"Waited {timeout_seconds}s for {description}, but it never happened")

            LOGGER.info(
                "Waiting for %s (%ds elapsed), checking again in %ss...", description, elapsed, interval_seconds
            )
            self.sleep(interval_seconds)


class Retrier:
    """Runs API operations with a fixed number of tries and a fixed delay between them."""

    def __init__(self, opts: RetryOpts, waiter: Waiter):
        """Init."""
        self.opts = opts
        self.waiter = waiter

    def _log_attempt(self, description: str, retry_state: RetryCallState) -> None:
        if retry_state.attempt_number == 1:
            LOGGER.debug("%s: attempt 1/%d", description, self.opts.tries)
        else:
            LOGGER.info("%s: attempt %d/%d", description, retry_state.attempt_number, self.opts.tries)

    def _log_failure(self, description: str, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome is not None else None
        LOGGER.warning(
            "%s: attempt %d/%d failed, retrying in %ss: %s",
            description,
            retry_state.attempt_number,
            self.opts.tries,
            self.opts.delay_seconds,
            error,
        )

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run func(*args, **kwargs) until it succeeds or the tries are exhausted.

        Only the errors in opts.exceptions are retried, anything else is risen right away.
        """
        description = getattr(func, "__name__", repr(func))
        retrying = Retrying(
            stop=stop_after_attempt(self.opts.tries),
            wait=wait_fixed(self.opts.delay_seconds),
            retry=retry_if_exception_type(self.opts.exceptions),
            sleep=self.waiter.sleep,
            before=lambda retry_state: self._log_attempt(description, retry_state),
            before_sleep=lambda retry_state: self._log_failure(description, retry_state),
        )
        try:
            return retrying(func, *args, **kwargs)
        except RetryError as error:
            last_error = error.last_attempt.exception()
            LOGGER.error("%s failed %d times, giving up: %s", description, self.opts.tries, last_error)
            raise RetriesExhausted(
                f"{description} failed after {self.opts.tries} attempts: {last_error}"
            ) from last_error


def setup_logging(verbose: bool = False, log_dir: Optional[Path] = None) -> None:
    """Configure the root logger: UTC timestamps on the console and, optionally, in a log file."""
    formatter = logging.Formatter(fmt="%(asctime)s [%(levelname)s] %(message)s", datefmt=LOG_TIMESTAMP_FORMAT)
    formatter.converter = time.gmtime

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    handlers: List[logging.Handler] = [console]

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "kube-asg-roll.log")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in handlers:
        root.addHandler(handler)

    # The API clients are very chatty at debug level
    for noisy in ("kubernetes", "urllib3", "botocore", "boto3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@dataclass(frozen=True)
class TestUtils:
    """Generic testing utilities."""

    @staticmethod
    def to_parametrize(test_cases: Dict[str, Dict[str, Any]]) -> Dict[str, Union[str, List[Any]]]:
        """Helper for parametrized tests.

        Use like:
        @pytest.mark.parametrize(**TestUtils.to_parametrize(
            {
                "Test case 1": {"param1": "value1", "param2": "value2"},
                # will set the value of the missing params as `None`
                "Test case 2": {"param1": "value1"},
                ...
            }
        ))
        """
        param_names = sorted(set(chain(*[list(params.keys()) for params in test_cases.values()])))

        def _fill_up_params(test_case_params):
            return [test_case_params.get(param_name, None) for param_name in param_names]

        if len(param_names) == 1:
            argvalues = [_fill_up_params(test_case_params)[0] for test_case_params in test_cases.values()]
        else:
            argvalues = [_fill_up_params(test_case_params) for test_case_params in test_cases.values()]

        return {"argnames": ",".join(param_names), "argvalues": argvalues, "ids": list(test_cases.keys())}

    @staticmethod
    def get_quick_settings(tries: int = 3, snapshots_file: Path = Path("./snapshots.json")) -> Settings:
        """Create settings that never sleep, for tests that go through retries and waits."""
        return Settings(
            retry=RetryOpts(tries=tries, delay_seconds=0),
            poll=PollOpts(
                zone_labels_interval_seconds=0,
                ready_nodes_interval_seconds=0,
                scale_down_interval_seconds=0,
                scale_down_settle_seconds=0,
                discovery_interval_seconds=0,
                timeout_seconds=5,
            ),
            snapshots_file=snapshots_file,
        )
