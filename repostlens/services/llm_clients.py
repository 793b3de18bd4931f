# llm_clients.py

import logging
from typing import Optional, Type, TypeVar

from google import genai
from google.genai import types
from google.oauth2 import service_account
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from repostlens import config
from repostlens.services.upstream import UpstreamError

log = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

VERTEX_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]

_openai_client: Optional[AsyncOpenAI] = None
_vertex_client: Optional[genai.Client] = None


def _ensure_api_key():
    if not config.OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY not set in environment")


def get_openai_client() -> AsyncOpenAI:
    global _openai_client
    _ensure_api_key()
    if _openai_client is None:
        _openai_client = AsyncOpenAI(api_key=config.OPENAI_API_KEY)
    return _openai_client


def _messages(prompt: str, system: Optional[str]) -> list:
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


async def chat_complete(
    prompt: str,
    *,
    system: Optional[str] = None,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
) -> str:
    """
    One chat completion. Returns the trimmed reply, "" when the model sent none.
    """
    client = get_openai_client()
    kwargs = {}
    # gpt-5 family only accepts the default temperature
    if temperature is not None:
        kwargs["temperature"] = temperature

    completion = await client.chat.completions.create(
        model=model or config.DEFAULT_LLM_MODEL,
        messages=_messages(prompt, system),
        **kwargs,
    )
    if not completion.choices:
        return ""
    return (completion.choices[0].message.content or "").strip()


async def parse_structured(
    prompt: str,
    schema: Type[SchemaT],
    *,
    system: Optional[str] = None,
    model: Optional[str] = None,
) -> Optional[SchemaT]:
    """
    Structured output through the Responses API; the reply is validated
    against `schema`. Returns None when the model sent no parsed output; a
    reply that fails validation raises UpstreamError.
    """
    client = get_openai_client()
    try:
        response = await client.responses.parse(
            model=model or config.DEFAULT_LLM_MODEL,
            input=_messages(prompt, system),
            text_format=schema,
        )
    except ValidationError as e:
        log.warning("%s reply failed validation: %s", schema.__name__, e)
        raise UpstreamError(f"Model output did not match {schema.__name__}", body=str(e)) from e
    return response.output_parsed


def get_vertex_client() -> genai.Client:
    """
    Gemini on Vertex AI with service-account credentials from env.
    Built once per process.
    """
    global _vertex_client
    if _vertex_client is not None:
        return _vertex_client

    if not (config.VERTEXAI_PROJECT and config.GOOGLE_CLIENT_EMAIL and config.GOOGLE_PRIVATE_KEY):
        raise RuntimeError("Vertex AI credentials are not fully configured")

    credentials = service_account.Credentials.from_service_account_info(
        {
            "type": "service_account",
            "project_id": config.VERTEXAI_PROJECT,
            "client_email": config.GOOGLE_CLIENT_EMAIL,
            "private_key": config.GOOGLE_PRIVATE_KEY,
            "token_uri": "https://oauth2.googleapis.com/token",
        },
        scopes=VERTEX_SCOPES,
    )
    _vertex_client = genai.Client(
        vertexai=True,
        project=config.VERTEXAI_PROJECT,
        location=config.VERTEXAI_LOCATION,
        credentials=credentials,
    )
    log.info("Vertex AI client ready (project=%s, location=%s)", config.VERTEXAI_PROJECT, config.VERTEXAI_LOCATION)
    return _vertex_client


def _response_text(response) -> str:
    text = getattr(response, "text", None) or ""
    if not text and getattr(response, "candidates", None):
        candidate = response.candidates[0]
        if candidate and candidate.content and candidate.content.parts:
            text = "".join(p.text for p in candidate.content.parts if isinstance(getattr(p, "text", None), str))
    return text.strip()


async def vertex_generate(
    prompt: str,
    *,
    system: Optional[str] = None,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_output_tokens: Optional[int] = None,
    json_output: bool = False,
) -> str:
    client = get_vertex_client()
    generation = types.GenerateContentConfig(
        system_instruction=system,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        response_mime_type="application/json" if json_output else None,
    )
    response = await client.aio.models.generate_content(
        model=model or config.VERTEXAI_TEXT_MODEL,
        contents=prompt,
        config=generation,
    )
    return _response_text(response)
