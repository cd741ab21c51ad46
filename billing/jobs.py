"""
billing/jobs.py

Client for the asynchronous image-generation job API (KIE).

A generation is a task: createTask returns a taskId, and the caller polls
recordInfo?taskId=... until the task reaches a terminal state. The poll
endpoint in billing/usage_routes.py charges the account the first time it
sees success.

Abstract base (GenerationClient) so tests and other vendors can plug in:
    - KieClient: httpx implementation

Normalised states:
    - 'success'           -> JobState.SUCCESS
    - 'fail' / 'failed'   -> JobState.FAILED
    - anything else       -> JobState.PROCESSING

Version History:
    2026-01-09: Initial implementation
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List

import httpx

from billing.config import KIE_API_KEY, KIE_API_BASE_URL, KIE_MODEL, KIE_TIMEOUT_SECONDS
from billing.errors import UpstreamError, ValidationError


logger = logging.getLogger(__name__)

# Appended to every prompt
TEXT_INSTRUCTION = (
    'If the image contains any text, signs, labels, or written content, it must be in '
    'English only. Do not include Vietnamese or any non-English text.'
)

ASPECT_RATIOS = {'1:1', '2:3', '3:2', '3:4', '4:3', '4:5', '5:4', '9:16', '16:9', '21:9'}
RESOLUTIONS = {'1K', '2K', '4K'}
OUTPUT_FORMATS = {'png', 'jpg'}

MAX_PROMPT_LENGTH = 2000


class JobState(str, Enum):
    PROCESSING = 'processing'
    SUCCESS = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self is not JobState.PROCESSING


@dataclass
class GenerationRequest:
    prompt: str
    image_input: Optional[List[str]] = None
    aspect_ratio: str = '1:1'
    resolution: str = '1K'
    output_format: str = 'png'

    @classmethod
    def from_payload(cls, data: dict) -> 'GenerationRequest':
        """Build from a client JSON body, falling back to defaults for bad options."""
        if not isinstance(data, dict):
            raise ValidationError('Request body must be a JSON object')

        prompt = str(data.get('prompt') or '').strip()[:MAX_PROMPT_LENGTH]

        aspect_ratio = data.get('aspect_ratio')
        resolution = data.get('resolution')
        output_format = data.get('output_format')
        image_input = data.get('image_input')

        return cls(
            prompt=prompt,
            image_input=[str(url) for url in image_input] if isinstance(image_input, list) else None,
            aspect_ratio=aspect_ratio if aspect_ratio in ASPECT_RATIOS else '1:1',
            resolution=resolution if resolution in RESOLUTIONS else '1K',
            output_format=output_format if output_format in OUTPUT_FORMATS else 'png',
        )


@dataclass
class JobStatus:
    """Normalised status of one generation task."""
    task_id: str
    state: JobState
    media_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def output(self) -> Optional[dict]:
        return {'media_url': self.media_url} if self.media_url else None


class GenerationClient(ABC):
    """Abstract image-generation job API."""

    @abstractmethod
    def create_task(self, request: GenerationRequest) -> str:
        """
        Submit a generation task.

        Returns:
            The external task id

        Raises:
            UpstreamError: API unreachable or refused the task
        """
        pass

    @abstractmethod
    def get_task_status(self, task_id: str) -> JobStatus:
        """
        Fetch the current state of a task.

        Raises:
            UpstreamError: API unreachable or returned an error
        """
        pass


def normalize_state(state: Optional[str]) -> JobState:
    state = (state or '').lower()
    if state == 'success':
        return JobState.SUCCESS
    if state in ('fail', 'failed'):
        return JobState.FAILED
    return JobState.PROCESSING


def first_result_url(result_json: Optional[str]) -> Optional[str]:
    """First entry of resultUrls in the resultJson string, if any."""
    if not result_json:
        return None
    try:
        parsed = json.loads(result_json)
    except (TypeError, ValueError):
        logger.warning("Unparseable resultJson from job API")
        return None

    urls = parsed.get('resultUrls') if isinstance(parsed, dict) else None
    if isinstance(urls, list) and urls:
        return urls[0]
    return None


class KieClient(GenerationClient):
    """KIE jobs API over httpx."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = KIE_MODEL,
        timeout: float = KIE_TIMEOUT_SECONDS,
        http_client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key or KIE_API_KEY
        self.base_url = (base_url or KIE_API_BASE_URL).rstrip('/')
        self.model = model
        self._http = http_client or httpx.Client(timeout=timeout)

    def _headers(self) -> dict:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f'{self.base_url}/{path}'
        try:
            response = self._http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException:
            logger.error(f"Timeout calling job API {path}")
            raise UpstreamError('Image service timed out')
        except httpx.HTTPError as e:
            logger.error(f"Error calling job API {path}: {e}")
            raise UpstreamError('Image service unavailable')

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200:
            message = body.get('msg') if isinstance(body, dict) else None
            logger.warning(f"Job API {path} returned {response.status_code}: {message}")
            raise UpstreamError(message or f'API request failed: {response.status_code}')

        if not isinstance(body, dict) or body.get('code') != 200:
            message = body.get('msg') if isinstance(body, dict) else None
            logger.warning(f"Job API {path} refused request: {message}")
            raise UpstreamError(message or 'Image service refused the request')

        return body.get('data') or {}

    def create_task(self, request: GenerationRequest) -> str:
        payload = {
            'model': self.model,
            'input': {
                'prompt': f'{request.prompt.strip()}. {TEXT_INSTRUCTION}',
                'image_input': request.image_input or [],
                'aspect_ratio': request.aspect_ratio,
                'resolution': request.resolution,
                'output_format': request.output_format,
            },
        }
        data = self._request('POST', 'createTask', json=payload)

        task_id = data.get('taskId')
        if not task_id:
            raise UpstreamError('Image service returned no task id')
        return task_id

    def get_task_status(self, task_id: str) -> JobStatus:
        data = self._request('GET', 'recordInfo', params={'taskId': task_id})

        state = normalize_state(data.get('state'))
        error = None
        if state is JobState.FAILED:
            error = data.get('failMsg') or 'Generation failed'

        return JobStatus(
            task_id=data.get('taskId') or task_id,
            state=state,
            media_url=first_result_url(data.get('resultJson')),
            error=error,
        )


# Singleton instance
_generation_client: Optional[GenerationClient] = None


def get_generation_client() -> GenerationClient:
    """Get or create the job API client."""
    global _generation_client
    if _generation_client is None:
        _generation_client = KieClient()
    return _generation_client


def set_generation_client(client: GenerationClient) -> None:
    """Replace the job API client (tests, other vendors)."""
    global _generation_client
    _generation_client = client
