"""
Connection Tester

Answers one question about a database configuration: can we use it?

A test runs in two phases:
1. Static validation of the provider's required fields (no I/O)
2. A reachability check: open an adapter, run a trivial round trip, close

DESIGN DECISION: The tester reports, it never records. Storing the outcome
(is_connected, last_connection_test) is the registry's job, so a test can
be run against unsaved operator input as easily as a stored configuration.

The result distinguishes "fix the configuration" (validation) from
"fix the network or server" (unreachable); raise_for_failure() turns
that into ConfigurationValidationError vs UnavailableError. A backend that
answers but refuses the credentials is a configuration problem, not an
unreachable one, and is never retried.
"""

import time
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import ArgumentError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from finance_db.config.settings import StorageSettings
from finance_db.models.database import (
    ConnectionFailureKind,
    ConnectionTestResult,
    SchemaCheckResult,
)
from finance_db.models.entities import MIGRATION_ORDER
from finance_db.services.providers import (
    ConfigLike,
    ConfigurationValidationError,
    create_adapter,
    get_variant,
)
from finance_db.services.storage import (
    CredentialsRejectedError,
    ProviderAdapter,
    StorageError,
    UnavailableError,
)


logger = structlog.get_logger(__name__)

AdapterFactory = Callable[[ConfigLike], ProviderAdapter]

# Backoff between retried pings is capped here (seconds).
MAX_RETRY_WAIT = 5


def raise_for_failure(result: ConnectionTestResult) -> None:
    """
    Raise the error matching a failed test; do nothing on success.

    Raises:
        ConfigurationValidationError: Fields missing or malformed
        UnavailableError: Fields fine, backend did not answer
    """
    if result.success:
        return
    if result.is_validation_failure:
        raise ConfigurationValidationError(result.errors or [result.error or "Invalid configuration"])
    raise UnavailableError(result.error or "Database unreachable")


def _last_result(retry_state: RetryCallState) -> ConnectionTestResult:
    return retry_state.outcome.result()


class ConnectionTester:
    """
    Validates and pings database configurations.

    Args:
        settings: Storage settings (timeouts, retry attempts)
        adapter_factory: Opens an adapter for a configuration;
                         defaults to the provider variant's adapter
        retry_multiplier: Seconds multiplier for exponential backoff
    """

    def __init__(
        self,
        settings: Optional[StorageSettings] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        retry_multiplier: float = 1.0,
    ):
        self._settings = settings or StorageSettings()
        self._adapter_factory = adapter_factory or (
            lambda config: create_adapter(config, self._settings)
        )
        self._retry_multiplier = retry_multiplier

    @staticmethod
    def _validation_failure(errors: list[str]) -> ConnectionTestResult:
        return ConnectionTestResult(
            success=False,
            failure_kind=ConnectionFailureKind.VALIDATION,
            error="; ".join(errors),
            errors=errors,
        )

    def _validate(self, config: ConfigLike) -> list[str]:
        try:
            return get_variant(config.provider).validate(config)
        except ConfigurationValidationError as e:
            return e.errors

    def _open(self, config: ConfigLike) -> ProviderAdapter:
        """
        Open an adapter, treating an unparseable URL as a validation failure.
        """
        try:
            return self._adapter_factory(config)
        except (ArgumentError, ValueError) as e:
            raise ConfigurationValidationError([f"Invalid connection settings: {e}"]) from e

    async def test(self, config: ConfigLike) -> ConnectionTestResult:
        """
        Validate a configuration and ping its backend once.

        Args:
            config: Stored configuration or unsaved operator input

        Returns:
            ConnectionTestResult; never raises for connection problems
        """
        errors = self._validate(config)
        if errors:
            logger.info(
                "connection_test_invalid",
                provider=config.provider.value,
                errors=errors,
            )
            return self._validation_failure(errors)

        variant = get_variant(config.provider)
        details = variant.describe(config)

        try:
            adapter = self._open(config)
        except ConfigurationValidationError as e:
            return self._validation_failure(e.errors)

        start = time.monotonic()
        try:
            version = await adapter.ping()
        except CredentialsRejectedError as e:
            logger.warning(
                "connection_test_rejected",
                provider=variant.provider.value,
                error=str(e),
            )
            message = f"{variant.label} rejected the credentials: {e.native_message}"
            return ConnectionTestResult(
                success=False,
                failure_kind=ConnectionFailureKind.VALIDATION,
                error=message,
                errors=[message],
                latency_ms=round((time.monotonic() - start) * 1000, 1),
                details=details,
            )
        except StorageError as e:
            latency_ms = round((time.monotonic() - start) * 1000, 1)
            logger.warning(
                "connection_test_failed",
                provider=variant.provider.value,
                error=str(e),
                latency_ms=latency_ms,
            )
            return ConnectionTestResult(
                success=False,
                failure_kind=ConnectionFailureKind.UNREACHABLE,
                error=f"{variant.label} connection failed: {e}",
                latency_ms=latency_ms,
                details=details,
            )
        finally:
            await adapter.close()

        latency_ms = round((time.monotonic() - start) * 1000, 1)
        details["server_version"] = version
        logger.info(
            "connection_test_passed",
            provider=variant.provider.value,
            latency_ms=latency_ms,
        )
        return ConnectionTestResult(
            success=True,
            latency_ms=latency_ms,
            details=details,
        )

    async def test_with_retry(
        self,
        config: ConfigLike,
        max_attempts: Optional[int] = None,
    ) -> ConnectionTestResult:
        """
        Test a configuration, retrying while the backend is unreachable.

        Validation failures return immediately; retrying cannot fix them.
        Backoff is exponential and capped at MAX_RETRY_WAIT seconds.

        Returns:
            The first successful result, or the last failed one
        """
        attempts = max_attempts or self._settings.tester_max_attempts

        def _log_retry(retry_state: RetryCallState) -> None:
            logger.info(
                "connection_test_retry",
                provider=config.provider.value,
                attempt=retry_state.attempt_number,
                max_attempts=attempts,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self._retry_multiplier, max=MAX_RETRY_WAIT),
            retry=retry_if_result(lambda result: result.is_unreachable),
            retry_error_callback=_last_result,
            before_sleep=_log_retry,
        )
        return await retrying(self.test, config)

    async def check_schema(self, config: ConfigLike) -> SchemaCheckResult:
        """
        Report which required collections are missing in the backend.

        Returns:
            SchemaCheckResult; on connection problems has_schema is False
            and error explains why
        """
        errors = self._validate(config)
        if errors:
            return SchemaCheckResult(has_schema=False, error="; ".join(errors))

        try:
            adapter = self._open(config)
        except ConfigurationValidationError as e:
            return SchemaCheckResult(has_schema=False, error=str(e))

        try:
            existing = await adapter.existing_collections()
        except StorageError as e:
            logger.warning("schema_check_failed", provider=config.provider.value, error=str(e))
            return SchemaCheckResult(has_schema=False, error=str(e))
        finally:
            await adapter.close()

        missing = [c.value for c in MIGRATION_ORDER if c.value not in existing]
        return SchemaCheckResult(has_schema=not missing, missing_collections=missing)
