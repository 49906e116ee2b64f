"""AI proxy gateway orchestration.

One inbound call flows through:

1. Parse: method, options, schema (compiled once, before anything is
   charged). Malformed input fails with 400.
2. Credentials: project gateway key, else the deployment key (500 if none).
3. Entitlements: daily request ceiling (429).
4. Balance pre-check for signed-in callers (402).
5. Dispatch over the candidate models.
6. Charge: streams are charged the fixed estimate before the response is
   returned; complete results are charged their reported usage.
7. Normalize into the HTTP response.
8. Streams charged at the estimate queue a reconciliation job once the
   body has left the server.

Anonymous callers are rate limited but never charged.
"""

import dataclasses
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from starlette.background import BackgroundTask
from starlette.responses import Response

from aiproxy.core.config import Settings, settings
from aiproxy.core.errors import ValidationError
from aiproxy.providers.base import (
    ChunkSource,
    Materialized,
    ModelProvider,
    OperationKind,
    PassthroughResponse,
    ProducedOutput,
    StreamMetadata,
)
from aiproxy.services.audio_input import decode_audio
from aiproxy.services.credentials import resolve_gateway_key
from aiproxy.services.dispatcher import (
    FallbackDispatcher,
    GenerationRequest,
    build_candidates,
)
from aiproxy.services.entitlements import CallerIdentity, EntitlementsService
from aiproxy.services.reconciliation_worker import ReconciliationJob, ReconciliationWorker
from aiproxy.services.schema_compiler import compile_schema
from aiproxy.services.schema_types import CompiledSchema, JsonSchemaPassthrough
from aiproxy.services.stream_normalizer import ShapeHint, normalize
from aiproxy.services.usage_ledger import EVENT_TYPE_GENERATION, UsageLedger

logger = logging.getLogger(__name__)

# Options consumed by the gateway itself; everything else goes to the backend.
_CONTROL_OPTIONS = frozenset({"model", "fallbackModels", "schema", "schemaDefinition", "chatId"})

_MEDIA_KINDS = frozenset(
    {OperationKind.GENERATE_IMAGE, OperationKind.GENERATE_SPEECH, OperationKind.TRANSCRIBE}
)

ProviderFactory = Callable[[str], ModelProvider]


@dataclass(frozen=True)
class ProxyCall:
    """A parsed inbound request body.

    Attributes:
        project_id: Project the call belongs to.
        method: Wire name of the operation.
        options: Backend options plus gateway controls.
    """

    project_id: str
    method: str
    options: dict[str, Any]


def parse_method(method: str) -> OperationKind:
    """Map a wire method name onto an OperationKind.

    Raises:
        ValidationError: Unknown method.
    """
    try:
        return OperationKind(method)
    except ValueError as e:
        supported = ", ".join(kind.value for kind in OperationKind)
        raise ValidationError(
            f"Invalid method '{method}'. Supported methods: {supported}"
        ) from e


def _resolve_schema(
    kind: OperationKind,
    options: dict[str, Any],
    lenient: bool,
) -> CompiledSchema | None:
    if not kind.is_structured:
        return None
    raw_schema = options.get("schema")
    if isinstance(raw_schema, dict) and raw_schema:
        return JsonSchemaPassthrough(json_schema=raw_schema)
    definition = options.get("schemaDefinition")
    if definition is None:
        raise ValidationError(f"{kind.value} requires options.schema or options.schemaDefinition")
    return compile_schema(definition, lenient=lenient)


def _string_option(options: dict[str, Any], name: str) -> str | None:
    value = options.get(name)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ValidationError(f"options.{name} must be a non-empty string")
    return value


def _fallback_option(options: dict[str, Any]) -> list[str] | None:
    value = options.get("fallbackModels")
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(m, str) and m for m in value):
        raise ValidationError("options.fallbackModels must be a list of model ids")
    return value


class ProxyGateway:
    """Runs one proxy call end to end.

    Args:
        ledger: Usage ledger bound to the request session.
        entitlements: Daily request ceilings.
        reconciliation: Worker for post-stream reconciliation (None disables it).
        provider_factory: Builds a model provider for a gateway key.
        app_settings: Settings for models, thresholds and schema parsing.
    """

    def __init__(
        self,
        *,
        ledger: UsageLedger,
        entitlements: EntitlementsService,
        reconciliation: ReconciliationWorker | None,
        provider_factory: ProviderFactory,
        app_settings: Settings | None = None,
    ) -> None:
        self._ledger = ledger
        self._entitlements = entitlements
        self._reconciliation = reconciliation
        self._provider_factory = provider_factory
        self._settings = app_settings or settings

    def candidates_for(self, kind: OperationKind, options: dict[str, Any]) -> list[str]:
        """Ordered candidate models for a call.

        Text and object methods fall back through the configured chain.
        Media methods use their own default model and only fall back when
        the caller lists alternatives.
        """
        requested = _string_option(options, "model")
        fallback = _fallback_option(options)
        if kind in _MEDIA_KINDS:
            default = {
                OperationKind.GENERATE_IMAGE: self._settings.image_model,
                OperationKind.GENERATE_SPEECH: self._settings.speech_model,
                OperationKind.TRANSCRIBE: self._settings.transcription_model,
            }[kind]
            return build_candidates(requested or default, fallback or [])
        return build_candidates(
            requested or self._settings.default_model,
            fallback if fallback is not None else self._settings.fallback_models,
        )

    async def handle(self, call: ProxyCall, identity: CallerIdentity) -> Response:
        """Run a proxy call.

        Args:
            call: Parsed request body.
            identity: The caller.

        Returns:
            The normalized HTTP response.

        Raises:
            ValidationError: Malformed method, options or schema (400).
            ConfigurationError: No gateway key (500).
            RateLimitExceededError: Daily ceiling reached (429).
            InsufficientCreditsError: No credits (402).
            DispatchExhaustedError: Every candidate failed (500).
        """
        kind = parse_method(call.method)
        options = call.options
        schema = _resolve_schema(kind, options, self._settings.schema_lenient_parsing)
        candidates = self.candidates_for(kind, options)
        chat_id = options.get("chatId") or call.project_id

        api_key = resolve_gateway_key(call.project_id, self._settings)

        await self._entitlements.check_and_record(identity)

        user_id = identity.user_id
        if user_id is not None:
            await self._ledger.check_balance(user_id)

        backend_options = {k: v for k, v in options.items() if k not in _CONTROL_OPTIONS}
        if kind is OperationKind.TRANSCRIBE:
            audio, media_type = await decode_audio(
                options.get("audio"), app_settings=self._settings
            )
            backend_options["audio"] = audio
            if media_type and not backend_options.get("mediaType"):
                backend_options["mediaType"] = media_type

        dispatcher = FallbackDispatcher(self._provider_factory(api_key))
        result = await dispatcher.dispatch(
            GenerationRequest(kind=kind, options=backend_options, schema=schema),
            candidates,
        )
        output = result.output

        background: BackgroundTask | None = None
        if user_id is not None:
            output, background = await self._charge(
                user_id, output, result.model_id, str(chat_id)
            )

        shape = ShapeHint.STRUCTURED if kind.is_structured else ShapeHint.TEXT
        return normalize(output, shape, background=background)

    async def _charge(
        self,
        user_id: uuid.UUID,
        output: ProducedOutput,
        model_id: str,
        chat_id: str,
    ) -> tuple[ProducedOutput, BackgroundTask | None]:
        if isinstance(output, Materialized):
            usage = output.usage
            await self._ledger.charge_usage(
                user_id,
                EVENT_TYPE_GENERATION,
                usage.input_tokens if usage else 0,
                usage.output_tokens if usage else 0,
                model_id,
                chat_id=chat_id,
                message_id=output.response_id,
            )
            return await self._with_credit_info(user_id, output), None

        try:
            event = await self._ledger.charge_stream_estimate(user_id, model_id, chat_id=chat_id)
        except Exception:
            await _discard(output)
            raise

        background = BackgroundTask(
            self._queue_reconciliation, output.metadata, event.id, chat_id
        )
        return output, background

    async def _with_credit_info(self, user_id: uuid.UUID, output: Materialized) -> Materialized:
        remaining = await self._ledger.get_remaining(user_id)
        value = {
            **output.value,
            "credits_remaining": remaining,
            "low_credit_warning": remaining < self._settings.low_credit_threshold,
        }
        return dataclasses.replace(output, value=value)

    async def _queue_reconciliation(
        self,
        metadata: StreamMetadata,
        event_id: uuid.UUID,
        chat_id: str,
    ) -> None:
        if self._reconciliation is None:
            return
        if metadata.response_id is None:
            logger.info("No message id for event %s, estimate stands", event_id)
            return
        self._reconciliation.schedule(
            ReconciliationJob(
                event_id=event_id,
                chat_id=chat_id,
                message_id=metadata.response_id,
                usage=metadata.usage,
            )
        )


async def _discard(output: ProducedOutput) -> None:
    """Release a stream that will never be sent."""
    match output:
        case ChunkSource(items=items):
            aclose = getattr(items, "aclose", None)
        case PassthroughResponse(body=body):
            aclose = getattr(body, "aclose", None)
        case _:
            aclose = None
    if aclose is not None:
        await aclose()
