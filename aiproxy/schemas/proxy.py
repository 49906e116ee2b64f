"""AI proxy request schema.

The body mirrors the client SDK call: a method name plus the options the
SDK would have received. Options are free-form; the gateway picks out its
own controls (model, fallbackModels, schema, schemaDefinition, chatId) and
forwards the rest.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProxyRequest(BaseModel):
    """Body of POST /api/v1/ai-proxy.

    Attributes:
        projectId: Project whose gateway key is used.
        method: Operation name (generateText, streamObject, ...).
        options: Backend options plus gateway controls.
    """

    model_config = ConfigDict(extra="ignore")

    projectId: str = Field(min_length=1, max_length=255)  # noqa: N815
    method: str = Field(default="generateText", max_length=50)
    options: dict[str, Any]
