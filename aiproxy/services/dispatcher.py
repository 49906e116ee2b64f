"""Fallback dispatcher.

Walks an ordered list of candidate models and returns the first success.
Candidates are tried strictly one after another; nothing is raced in
parallel and nothing after the first success is attempted.

Every error from a candidate (network, provider rejection, malformed
request, invalid structured output) is treated the same way: remember it
and try the next model. When the list runs out, DispatchExhaustedError
carries the last error, which is what the caller sees.

For structured operations the schema definition is compiled once, before
the first attempt, and the same compiled schema is passed to every
candidate.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from aiproxy.core.errors import DispatchExhaustedError, ValidationError
from aiproxy.providers.base import ModelProvider, OperationKind, ProducedOutput
from aiproxy.services.schema_compiler import compile_schema
from aiproxy.services.schema_types import CompiledSchema

logger = structlog.get_logger()


@dataclass
class GenerationRequest:
    """One inbound generation call.

    Attributes:
        kind: Requested operation.
        options: Caller options forwarded to the backend.
        schema: Compiled schema, if the caller already has one.
        schema_definition: Schema DSL to compile when ``schema`` is None.
        lenient_schema: Downgrade unknown schema expressions to strings.
    """

    kind: OperationKind
    options: dict[str, Any] = field(default_factory=dict)
    schema: CompiledSchema | None = None
    schema_definition: Any = None
    lenient_schema: bool = False


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of a successful dispatch.

    Attributes:
        output: What the winning candidate produced.
        model_id: The winning candidate.
        failures: (model id, error message) for each candidate tried before it.
    """

    output: ProducedOutput
    model_id: str
    failures: list[tuple[str, str]]


def build_candidates(
    requested_model: str | None,
    fallback_order: Sequence[str],
) -> list[str]:
    """Build the ordered candidate list.

    The requested model goes first, followed by the fallback order as
    configured. Duplicates are kept.

    Args:
        requested_model: Model the caller asked for, if any.
        fallback_order: Configured fallback models.

    Returns:
        Candidate model ids in attempt order.
    """
    candidates = [requested_model] if requested_model else []
    candidates.extend(fallback_order)
    return candidates


class FallbackDispatcher:
    """Sequential first-success dispatcher over a model provider."""

    def __init__(self, provider: ModelProvider) -> None:
        self.provider = provider

    async def dispatch(
        self,
        request: GenerationRequest,
        candidates: Sequence[str],
    ) -> DispatchResult:
        """Run the request against each candidate until one succeeds.

        Args:
            request: The generation request.
            candidates: Model ids in attempt order.

        Returns:
            DispatchResult for the first candidate that succeeded.

        Raises:
            ValidationError: A structured operation has no schema.
            SchemaCompileError: The schema definition does not compile.
            DispatchExhaustedError: Every candidate failed (or there were none).
        """
        schema = self._resolve_schema(request)

        failures: list[tuple[str, str]] = []
        last_error: Exception | None = None
        for model_id in candidates:
            handle = self.provider.resolve(model_id)
            params = {**request.options, "model": handle.model_id}
            if schema is not None:
                params["schema"] = schema
            try:
                output = await handle.invoke(request.kind, params)
            except Exception as e:
                last_error = e
                failures.append((model_id, str(e)))
                logger.warning(
                    "candidate_model_failed",
                    model=model_id,
                    method=request.kind.value,
                    error=str(e),
                    error_type=type(e).__name__,
                    attempt=len(failures),
                    candidates=len(candidates),
                )
                continue

            if failures:
                logger.info(
                    "fallback_model_succeeded",
                    model=model_id,
                    method=request.kind.value,
                    failed_models=[model for model, _ in failures],
                )
            return DispatchResult(output=output, model_id=model_id, failures=failures)

        logger.error(
            "all_candidate_models_failed",
            method=request.kind.value,
            candidates=list(candidates),
        )
        raise DispatchExhaustedError(last_error, failures)

    @staticmethod
    def _resolve_schema(request: GenerationRequest) -> CompiledSchema | None:
        if not request.kind.is_structured:
            return request.schema
        if request.schema is not None:
            return request.schema
        if request.schema_definition is None:
            raise ValidationError(
                f"A schema or schemaDefinition is required for {request.kind.value}"
            )
        return compile_schema(request.schema_definition, lenient=request.lenient_schema)
