#!/usr/bin/env python3
"""
Car Identifier: CLI app that identifies vehicles in photos using a vision-language model.

Scans a folder of images, asks the model for make, model, body type, year, color, condition,
an estimated value and a short description of each car, and writes every answer to a single
JSON report. Images are sent in small concurrent batches with a pause between batches; a
rate-limited request is retried once after a longer pause.

Requirements:
 - An OpenAI API key, or an LM Studio / Ollama server running a vision-language model.

"""
# ruff: noqa: PLR0913

import asyncio
import json
import math
import os
import re
import sys
import time
import urllib.parse
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from http import HTTPStatus
from pathlib import Path
from typing import Annotated, Any, Literal

import httpx
from cyclopts import App, Parameter, validators
from dotenv import find_dotenv, load_dotenv
from loguru import logger
from openai import AsyncOpenAI
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializerFunctionWrapHandler,
    TypeAdapter,
    model_serializer,
)
from pydantic_ai import Agent, BinaryContent, ModelSettings
from pydantic_ai.exceptions import UnexpectedModelBehavior
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.ollama import OllamaProvider
from pydantic_ai.providers.openai import OpenAIProvider


load_dotenv(find_dotenv(usecwd=True))

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]
ProviderName = Literal["openai", "lmstudio", "ollama"]

# Configuration defaults
DEFAULT_OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
DEFAULT_OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
DEFAULT_LMSTUDIO_BASE_URL = os.getenv("LM_STUDIO_BASE_URL", "http://localhost:1234/v1")
DEFAULT_LMSTUDIO_API_KEY = os.getenv("LM_STUDIO_API_KEY", DEFAULT_OPENAI_API_KEY)
DEFAULT_OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")
DEFAULT_OLLAMA_API_KEY = os.getenv("OLLAMA_API_KEY")
DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "gpt-4o")
PROVIDER_URLS: dict[str, str] = {
    "openai": DEFAULT_OPENAI_BASE_URL,
    "lmstudio": DEFAULT_LMSTUDIO_BASE_URL,
    "ollama": DEFAULT_OLLAMA_BASE_URL,
}
PROVIDER_API_KEYS: dict[str, str | None] = {
    "openai": DEFAULT_OPENAI_API_KEY,
    "lmstudio": DEFAULT_LMSTUDIO_API_KEY,
    "ollama": DEFAULT_OLLAMA_API_KEY,
}

# Fixed run parameters
BATCH_SIZE = 3
BATCH_DELAY_SECONDS = 2.0
RATE_LIMIT_DELAY_SECONDS = 10.0
TEMPERATURE = 0.0
MAX_TOKENS = 500
RESPONSE_PREVIEW_CHARS = 100
IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif"})
UNKNOWN_VALUE = "unknown"


class VehicleInfo(BaseModel):
    """Fields the model is asked to fill in for every photographed car."""

    make: str = Field(description="Manufacturer of the car")
    model: str = Field(description="Model name")
    type: str = Field(description='Body type (e.g. "Sedan", "Estate", "SUV", "Convertible")')
    year: str = Field(description="Model year (an approximate year, give or take a few, is fine)")
    color: str = Field(description="Exterior color")
    condition: str = Field(description='Condition (e.g. "new", "good", "used", "poor")')
    estimated_value: str = Field(
        description="Estimated market value in Swedish kronor (an approximation is fine)",
    )
    description: str = Field(
        description=(
            "A short description of the car's appearance and any distinctive features. "
            "If the car is damaged, briefly estimate what the repairs would cost"
        ),
    )


def _response_template() -> str:
    """
    Render the JSON object the model must answer with.

    Examples:
        >>> print(_response_template().splitlines()[1])
          "make": "...",

    """
    return json.dumps(dict.fromkeys(VehicleInfo.model_fields, "..."), indent=2)


# Prompt templates
SYSTEM_PROMPT = (
    "You are a vehicle identification expert. "
    "Answer ONLY with a valid JSON object in exactly this format:\n"
    f"{_response_template()}\n"
    f'If something cannot be determined from the image, use the value "{UNKNOWN_VALUE}".\n'
    "Answer with JSON ONLY, no other words or formatting."
)

USER_PROMPT = (
    "Identify the following values from the image:\n"
    + "\n".join(
        f"- {name}: {info.description}" for name, info in VehicleInfo.model_fields.items()
    )
    + "\n\nRemember: JSON only, no other words."
)

REQUEST_SETTINGS = ModelSettings(
    temperature=TEMPERATURE,
    max_tokens=MAX_TOKENS,
    extra_body={"response_format": {"type": "json_object"}},
)

_OPENING_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CLOSING_FENCE = re.compile(r"\s*```$")


class ImageItem(BaseModel):
    """One discovered image file and the media type it is sent with."""

    model_config = ConfigDict(frozen=True)

    filename: str
    path: Path
    media_type: str

    @classmethod
    def from_path(cls, path: Path) -> "ImageItem":
        """
        Build an item from a file path.

        Examples:
            >>> ImageItem.from_path(Path("cars/volvo.PNG")).media_type
            'image/png'
            >>> ImageItem.from_path(Path("cars/saab.gif")).media_type
            'image/jpeg'

        """
        return cls(filename=path.name, path=path, media_type=media_type_for(path))


class ImageOutcome(BaseModel):
    """Per-image report entry: parsed data (or null) and the error message of a failed call."""

    filename: str
    data: dict[str, Any] | None = None
    error: str | None = None

    @model_serializer(mode="wrap")
    def _omit_missing_error(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        serialized: dict[str, Any] = handler(self)
        if self.error is None:
            serialized.pop("error", None)
        return serialized


REPORT_ADAPTER = TypeAdapter(list[ImageOutcome])


class RateLimitedError(Exception):
    """The inference service asked us to back off (HTTP 429)."""


@dataclass(frozen=True)
class IdentifyContext:
    """Dependencies shared by every request of a run."""

    agent: Agent[None, str]
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="car-identifier",
    version=__version__,
)


FILE_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {function}:{line} | {message} | {extra}"
)
CONSOLE_LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | "
    "<level>{message:<32}</level> | <yellow>{extra}</yellow>"
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> Path | None:
    """
    Route Loguru output to a per-run log file and/or stderr.

    Each run gets its own file, named after the UTC start time, so reports and logs can be
    matched up afterwards.

    Args:
        file_log_level: Log level for the run's file (use 'OFF' to disable)
        console_log_level: Log level for stderr (use 'OFF' to disable)
        log_folder: Directory where run log files are kept

    Returns:
        Path of the run's log file, or None when file logging is off.

    """
    logger.remove()

    log_file: Path | None = None
    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / f"car_identifier-{datetime.now(tz=UTC):%Y%m%dT%H%M%SZ}.log"
        logger.add(
            log_file,
            level=file_log_level,
            format=FILE_LOG_FORMAT,
            encoding="utf-8",
            retention=20,
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(sys.stderr, level=console_log_level, colorize=True, format=CONSOLE_LOG_FORMAT)

    return log_file


def media_type_for(path: Path) -> str:
    """
    Return the media type an image is labelled with when sent to the model.

    Only PNG gets its own type; every other accepted format is sent as JPEG.

    Examples:
        >>> media_type_for(Path("a.png"))
        'image/png'
        >>> media_type_for(Path("b.jpeg"))
        'image/jpeg'

    """
    return "image/png" if path.suffix.lower() == ".png" else "image/jpeg"


def discover_images(images_dir: Path) -> list[ImageItem]:
    """
    List the image files directly inside a directory, sorted by filename.

    Raises:
        OSError: If the directory is missing or cannot be read.

    """
    entries = sorted(images_dir.iterdir(), key=lambda entry: entry.name)
    items = [
        ImageItem.from_path(entry)
        for entry in entries
        if entry.is_file() and entry.suffix.lower() in IMAGE_EXTENSIONS
    ]
    logger.info("image_files_discovered", count=len(items), folder=str(images_dir))
    return items


async def read_image(item: ImageItem) -> BinaryContent:
    """Load an image file as-is in a worker thread; the transport base64-encodes it."""
    data = await asyncio.to_thread(item.path.read_bytes)
    logger.debug("image_loaded", size_kb=len(data) // 1024, media_type=item.media_type)
    return BinaryContent(data=data, media_type=item.media_type)


def clean_json_response(raw: str) -> str:
    """
    Strip surrounding whitespace and Markdown code fences from a model answer.

    Fences are removed until none remain, so cleaning an already clean string is a no-op.

    Examples:
        >>> clean_json_response('```json\\n{"make": "Volvo"}\\n```')
        '{"make": "Volvo"}'
        >>> clean_json_response('  ```\\n{}\\n```  ')
        '{}'
        >>> clean_json_response('{"make": "Saab"}')
        '{"make": "Saab"}'

    """
    cleaned = raw.strip()
    while True:
        stripped = _OPENING_FENCE.sub("", cleaned, count=1)
        stripped = _CLOSING_FENCE.sub("", stripped, count=1).strip()
        if stripped == cleaned:
            return cleaned
        cleaned = stripped


def parse_vehicle_info(cleaned: str) -> dict[str, Any] | None:
    """
    Parse a cleaned model answer into a JSON object.

    Returns None (after logging) when the text is not a JSON object.

    Examples:
        >>> parse_vehicle_info('{"make": "Volvo"}')
        {'make': 'Volvo'}
        >>> parse_vehicle_info("not json at all") is None
        True

    """
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.error("response_json_parse_failed", error=str(exc), response=cleaned)
        return None

    if not isinstance(parsed, dict):
        logger.error("response_not_a_json_object", kind=type(parsed).__name__)
        return None

    return parsed


def is_rate_limited(exc: BaseException) -> bool:
    """Tell whether a failed request was throttled by the service (HTTP 429)."""
    return getattr(exc, "status_code", None) == HTTPStatus.TOO_MANY_REQUESTS


async def request_vehicle_info(image: BinaryContent, ctx: IdentifyContext) -> str:
    """
    Send one image to the model with the fixed prompts and return its raw text answer.

    Args:
        image: Image bytes and media type
        ctx: Run context holding the configured agent

    Returns:
        The model's answer, untouched

    """
    _t0 = time.perf_counter()
    result = await ctx.agent.run(
        [USER_PROMPT, image],
        model_settings=REQUEST_SETTINGS,
    )
    logger.info(
        "ai_inference_completed",
        seconds=round(time.perf_counter() - _t0, 3),
    )
    return result.output


async def _attempt(
    item: ImageItem,
    ctx: IdentifyContext,
    *,
    index: str,
    final: bool,
) -> ImageOutcome:
    """
    Run a single request for an image and turn the answer into an outcome.

    Raises:
        RateLimitedError: If the request was throttled and another attempt is allowed.
        OSError: If the image file cannot be read.

    """
    image = await read_image(item)
    try:
        raw = await request_vehicle_info(image, ctx)
    except UnexpectedModelBehavior as exc:
        # The service answered, but with nothing usable (e.g. empty content): same as unparseable.
        logger.error("vehicle_info_unparsed", index=index, error=str(exc))
        return ImageOutcome(filename=item.filename, data=None)
    except Exception as exc:  # noqa: BLE001
        logger.error("request_failed", index=index, error=str(exc))
        if is_rate_limited(exc) and not final:
            raise RateLimitedError(str(exc)) from exc
        return ImageOutcome(filename=item.filename, data=None, error=str(exc))

    logger.debug("raw_response", index=index, preview=raw[:RESPONSE_PREVIEW_CHARS])

    # A parse failure leaves `error` unset, so it reads like an empty answer in the report.
    # Whether it should carry the parse error instead is still undecided.
    data = parse_vehicle_info(clean_json_response(raw))
    if data is None:
        logger.error("vehicle_info_unparsed", index=index, response=raw)
    else:
        logger.info("vehicle_info_parsed", index=index)
    return ImageOutcome(filename=item.filename, data=data)


async def process_image(item: ImageItem, ctx: IdentifyContext, *, index: str) -> ImageOutcome:
    """
    Identify the car in one image, retrying once if the service rate-limits us.

    Args:
        item: Image to process
        ctx: Run context (agent and sleep function)
        index: Position label for logging, e.g. "4/12"

    Returns:
        The image's outcome. Request failures are captured in it rather than raised.

    """
    with logger.contextualize(file=item.filename):
        logger.info("processing_image", index=index)
        try:
            return await _attempt(item, ctx, index=index, final=False)
        except RateLimitedError:
            logger.warning("rate_limited_waiting", seconds=RATE_LIMIT_DELAY_SECONDS)

        await ctx.sleep(RATE_LIMIT_DELAY_SECONDS)
        with logger.contextualize(retry=True):
            return await _attempt(item, ctx, index=index, final=True)


async def process_images(items: Sequence[ImageItem], ctx: IdentifyContext) -> list[ImageOutcome]:
    """
    Process images in fixed-size batches, concurrently within a batch.

    Batches run one after another with a pause in between (never after the last one).
    Every image yields exactly one outcome, in input order.

    Args:
        items: Images in processing order
        ctx: Run context (agent and sleep function)

    Returns:
        One outcome per image

    """
    outcomes: list[ImageOutcome] = []
    total = len(items)
    batch_count = math.ceil(total / BATCH_SIZE)

    for batch_number, start in enumerate(range(0, total, BATCH_SIZE), start=1):
        batch = items[start : start + BATCH_SIZE]
        logger.info("processing_batch", batch=f"{batch_number}/{batch_count}", size=len(batch))

        batch_outcomes = await asyncio.gather(
            *(
                process_image(item, ctx, index=f"{start + offset + 1}/{total}")
                for offset, item in enumerate(batch)
            ),
        )
        outcomes.extend(batch_outcomes)

        if batch_number < batch_count:
            logger.info("waiting_before_next_batch", seconds=BATCH_DELAY_SECONDS)
            await ctx.sleep(BATCH_DELAY_SECONDS)

    return outcomes


def write_report(outcomes: Sequence[ImageOutcome], output_path: Path) -> None:
    """Write all outcomes as a pretty-printed JSON array."""
    output_path.write_bytes(REPORT_ADAPTER.dump_json(list(outcomes), indent=2))
    logger.info("report_written", path=str(output_path), entries=len(outcomes))


def _served_models(api_base_url: str, api_key: str | None) -> list[str]:
    """
    Ask an OpenAI-compatible server which model ids it serves (GET <base>/models).

    Raises:
        SystemExit: If the URL is not HTTP(S), the server is unreachable or the listing is bad.

    """
    models_url = api_base_url.rstrip("/") + "/models"
    target = urllib.parse.urlparse(models_url)
    if target.scheme not in {"http", "https"} or not target.netloc:
        logger.error("provider_url_not_http", url=models_url)
        raise SystemExit(1)

    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(models_url, headers=headers, timeout=5.0)
        response_ok = response.status_code == HTTPStatus.OK
        listing = response.json() if response_ok else None
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("provider_models_unavailable", url=models_url, error=str(exc))
        raise SystemExit(1) from exc

    if not isinstance(listing, dict):
        logger.error("provider_models_rejected", url=models_url, status=response.status_code)
        raise SystemExit(1)

    return [
        str(entry["id"])
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]


def _validate_model_listed(api_base_url: str, model_name: str, api_key: str | None) -> None:
    """Stop before any image is sent when the local server does not serve the model."""
    served = _served_models(api_base_url, api_key)
    if model_name not in served:
        logger.error("vision_model_not_served", requested=model_name, served=served)
        raise SystemExit(1)
    logger.debug("vision_model_served", model=model_name)


def build_agent(
    client: AsyncOpenAI,
    model_name: str,
    *,
    provider_name: ProviderName = "openai",
) -> Agent[None, str]:
    """
    Wrap an OpenAI client in a text-output agent carrying the system prompt.

    Agent-level retries are disabled, so each run issues exactly one chat completion.
    """
    provider: OpenAIProvider | OllamaProvider
    if provider_name == "ollama":
        provider = OllamaProvider(openai_client=client)
    else:
        provider = OpenAIProvider(openai_client=client)

    chat_model = OpenAIChatModel(model_name=model_name, provider=provider)
    return Agent(
        chat_model,
        output_type=str,
        system_prompt=SYSTEM_PROMPT,
        retries=0,
        output_retries=0,
    )


def create_agent(
    provider_name: ProviderName,
    model_name: str,
    *,
    api_base_url: str | None,
    api_key: str | None,
) -> Agent[None, str]:
    """
    Build a text-output agent for the chosen provider.

    The underlying OpenAI client never retries on its own; rate limits are handled by
    process_image instead.
    """
    resolved_url = api_base_url or PROVIDER_URLS[provider_name]
    resolved_api_key = api_key or PROVIDER_API_KEYS[provider_name]
    logger.info(
        "provider_config_resolved",
        provider=provider_name,
        url=resolved_url,
        model=model_name,
        api_key_present=bool(resolved_api_key),
    )

    if provider_name == "openai" and not resolved_api_key:
        logger.error("missing_api_key", hint="Set OPENAI_API_KEY or pass --api-key")
        raise SystemExit(1)
    if provider_name == "lmstudio":
        _validate_model_listed(resolved_url, model_name, resolved_api_key)

    client = AsyncOpenAI(
        base_url=resolved_url,
        api_key=resolved_api_key or "api-key-not-set",
        max_retries=0,
    )
    return build_agent(client, model_name, provider_name=provider_name)


@app.default
def identify(
    images_dir: Annotated[
        Path,
        Parameter(
            name=("--input", "-i"),
            validator=validators.Path(exists=True, file_okay=False, dir_okay=True),
            help="Folder containing the car photos (png, jpg, jpeg, gif)",
        ),
    ] = Path("images"),
    output_path: Annotated[
        Path,
        Parameter(
            name=("--output", "-o"),
            help="Where to write the JSON report",
        ),
    ] = Path("carinfo.json"),
    *,
    model_name: Annotated[
        str,
        Parameter(
            name=("--model", "-m"),
            help="Vision-language model name",
        ),
    ] = DEFAULT_MODEL_NAME,
    provider_name: Annotated[
        ProviderName,
        Parameter(
            name=("--provider",),
            help="Backend provider: 'openai', 'lmstudio' or 'ollama'",
        ),
    ] = "openai",
    api_base_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="Provider API base URL"),
    ] = None,
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="Provider API key. Will try env vars if not set"),
    ] = None,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Identify the car in every image of a folder and write the answers to a JSON report.

    Behavior:
    - Images are sent three at a time, with a two second pause between batches.
    - A rate-limited request waits ten seconds and is retried once.
    - Failed requests are recorded in the report with their error message; answers that are
        not valid JSON are recorded with null data.

    Exit status: 0 once the report is written, however many images failed. 1 if the folder
    cannot be read, the provider is misconfigured or the report cannot be written.

    Examples:
        car-identifier -i ./images -o carinfo.json
        car-identifier -i ./images --provider lmstudio -m qwen/qwen3-vl-30b

    """
    log_file = setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    logger.info(
        "starting_car_identifier",
        images_dir=str(images_dir),
        output=str(output_path),
        model=model_name,
        provider=provider_name,
        api_base_url=api_base_url,
        api_key_present=bool(api_key),
        log_file=str(log_file) if log_file else None,
    )

    try:
        items = discover_images(images_dir)
    except OSError as exc:
        logger.error("image_folder_unreadable", folder=str(images_dir), error=str(exc))
        raise SystemExit(1) from exc

    ctx = IdentifyContext(
        agent=create_agent(
            provider_name,
            model_name,
            api_base_url=api_base_url,
            api_key=api_key,
        ),
    )

    try:
        outcomes = asyncio.run(process_images(items, ctx))
    except OSError as exc:
        logger.exception("image_read_failed", error=str(exc))
        raise SystemExit(1) from exc

    try:
        write_report(outcomes, output_path)
    except OSError as exc:
        logger.exception("report_write_failed", path=str(output_path), error=str(exc))
        raise SystemExit(1) from exc

    successful = sum(outcome.data is not None for outcome in outcomes)
    logger.info(
        "processing_summary",
        total_files=len(items),
        successful=successful,
        failed=len(items) - successful,
    )


if __name__ == "__main__":
    app()
