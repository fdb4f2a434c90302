"""Gemini API client: video renders, voiceovers and creative briefs.

Implements the GenerationCapability and BriefWriter contracts over the
Gemini REST API with httpx. It does:
- A client-side request rate limit via AsyncLimiter
- A credential snapshot per request: the API key is read when each call is
  made, and a fresh httpx.AsyncClient is opened per call
- Mapping of HTTP/transport failures to RemoteOperationError so the error
  classifier sees status code, service status and message

Operation Kinds:
    VIDEO         predictLongRunning on the video model, polled by operation name
    EXTEND_VIDEO  predictLongRunning on the extension model with a source video
    VOICE         generateContent with audio output; synchronous, so the
                  handle is already finished and the first poll returns it.
                  The result is held until that poll or release_operation()

Retries are NOT done here. The orchestrator retries per its backoff policy.
"""

import base64
import io
import json
import uuid
import wave
from collections.abc import Mapping
from typing import Any

import httpx
from aiolimiter import AsyncLimiter

from adstudio.clients.base import PollOutcome
from adstudio.config import OrchestratorSettings, load_settings
from adstudio.exceptions import ConfigurationError, RemoteOperationError
from adstudio.models import CreativeBrief, OperationHandle, OperationKind, RawFailure
from adstudio.schemas.job import JobSpec
from adstudio.services.credentials import CredentialProvider
from adstudio.utils.logging import get_logger

log = get_logger(__name__)

INLINE_REF_PREFIX = "inline:"

# Speech model output: 16-bit mono PCM
VOICE_SAMPLE_RATE = 24_000
VOICE_SAMPLE_WIDTH = 2


def pcm_to_wav_data_uri(pcm: bytes, sample_rate: int = VOICE_SAMPLE_RATE) -> str:
    """Wrap raw PCM in a WAV container and return it as a data URI."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(VOICE_SAMPLE_WIDTH)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:audio/wav;base64,{encoded}"


def _strip_code_fence(text: str) -> str:
    return text.replace("```json", "").replace("```", "").strip()


class GeminiClient:
    """Rate-limited Gemini REST client.

    Args:
        settings: Model names, base URL and rate limit. Loaded from env if None.
        credentials: Source of the API key, read per call.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        settings: OrchestratorSettings | None = None,
        credentials: CredentialProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
    ):
        self.settings = settings or load_settings()
        self.credentials = credentials or CredentialProvider()
        self.transport = transport
        self.timeout = timeout
        self.rate_limiter = AsyncLimiter(
            max_rate=self.settings.max_requests_per_second, time_period=1
        )
        self._inline_results: dict[str, dict[str, Any]] = {}

    # GenerationCapability

    async def start_operation(
        self, kind: OperationKind, params: Mapping[str, Any]
    ) -> OperationHandle:
        if kind is OperationKind.VOICE:
            uri = await self._synthesize_voice(params["text"], params.get("voice", "Kore"))
            ref = f"{INLINE_REF_PREFIX}{uuid.uuid4().hex}"
            self._inline_results[ref] = {"uri": uri}
            return OperationHandle(remote_ref=ref, kind=kind)

        if kind is OperationKind.EXTEND_VIDEO:
            model = self.settings.extend_video_model
            instance: dict[str, Any] = {
                "prompt": params["prompt"],
                "video": {"uri": params["video_uri"]},
            }
        else:
            model = self.settings.video_model
            image = params["image"]
            instance = {
                "prompt": params["prompt"],
                "image": {"bytesBase64Encoded": image["data"], "mimeType": image["mime_type"]},
            }

        body = {
            "instances": [instance],
            "parameters": {
                "aspectRatio": params.get("aspect_ratio", "16:9"),
                "resolution": "720p",
            },
        }
        data = await self._request("POST", f"/models/{model}:predictLongRunning", json=body)
        name = data.get("name")
        if not name:
            raise RemoteOperationError("Video request accepted but no operation name returned")
        log.info("gemini_operation_started", kind=kind.value, model=model, operation=name)
        return OperationHandle(remote_ref=name, kind=kind)

    async def poll_operation(self, handle: OperationHandle) -> PollOutcome:
        if handle.remote_ref.startswith(INLINE_REF_PREFIX):
            output = self._inline_results.pop(handle.remote_ref, None)
            if output is None:
                return PollOutcome(
                    done=True, failure=RawFailure("Voice output is no longer available")
                )
            return PollOutcome(done=True, output=output)

        data = await self._request("GET", f"/{handle.remote_ref}")
        if not data.get("done"):
            return PollOutcome(done=False)

        error = data.get("error")
        if error:
            return PollOutcome(
                done=True,
                failure=RawFailure(
                    message=error.get("message") or "The generation was cancelled by the server.",
                    status_code=error.get("code") if isinstance(error.get("code"), int) else None,
                    status=error.get("status"),
                ),
            )

        samples = (
            data.get("response", {}).get("generateVideoResponse", {}).get("generatedSamples") or []
        )
        uri = samples[0].get("video", {}).get("uri") if samples else None
        if not uri:
            return PollOutcome(
                done=True,
                failure=RawFailure("Video render completed but no data URI was returned."),
            )
        return PollOutcome(done=True, output={"uri": uri})

    def release_operation(self, handle: OperationHandle) -> None:
        """Forget a voice result whose handle will never be polled.

        Long-running renders hold no client-side state, so only inline
        handles are affected.
        """
        if self._inline_results.pop(handle.remote_ref, None) is not None:
            log.debug("gemini_inline_result_released", operation=handle.remote_ref)

    # BriefWriter

    async def write_brief(self, spec: JobSpec) -> CreativeBrief:
        """Ask the text model for a visual prompt, slogan and voiceover script."""
        research = (
            "Use Google Search to find accurate product info and brand tone from the URL provided."
            if spec.website_url
            else "Generate a creative direction using the product name and description."
        )
        website = f" (Website: {spec.website_url})" if spec.website_url else ""
        prompt = (
            "Task: Commercial Direction Specialist.\n"
            f'Product: "{spec.name}"{website}\n'
            f'Details: "{spec.description}"\n'
            f"Specifics: Intro({spec.intro_text or 'none'}), Outro({spec.outro_text or 'none'})\n\n"
            f"{research}\n"
            "Output strictly JSON:\n"
            "- visualPrompt: Detailed cinematic scene description for video generator.\n"
            "- slogan: Catchy 3-5 word slogan.\n"
            "- voiceoverScript: Engaging 15-second script."
        )
        body: dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"responseMimeType": "application/json"},
        }
        if spec.website_url:
            body["tools"] = [{"googleSearch": {}}]

        data = await self._request(
            "POST", f"/models/{self.settings.brief_model}:generateContent", json=body
        )
        text = self._first_part(data).get("text")
        if not text:
            raise RemoteOperationError("Creative brief response was empty")
        try:
            parsed = json.loads(_strip_code_fence(text))
            return CreativeBrief(
                visual_prompt=parsed["visualPrompt"],
                slogan=parsed["slogan"],
                voiceover_script=parsed["voiceoverScript"],
            )
        except (ValueError, KeyError, TypeError) as e:
            raise RemoteOperationError(f"Creative brief response was not valid JSON: {e}") from e

    # Internals

    async def _synthesize_voice(self, text: str, voice: str) -> str:
        body = {
            "contents": [
                {"parts": [{"text": f"Professional commercial reading of this script: {text}"}]}
            ],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}}},
            },
        }
        data = await self._request(
            "POST", f"/models/{self.settings.voice_model}:generateContent", json=body
        )
        audio = self._first_part(data).get("inlineData", {}).get("data")
        if not audio:
            raise RemoteOperationError("Voiceover response contained no audio")
        return pcm_to_wav_data_uri(base64.b64decode(audio))

    @staticmethod
    def _first_part(data: Mapping[str, Any]) -> dict[str, Any]:
        candidates = data.get("candidates") or [{}]
        parts = candidates[0].get("content", {}).get("parts") or [{}]
        return parts[0]

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send one request with a fresh credential snapshot.

        Raises:
            RemoteOperationError: On any HTTP error status or transport failure.
        """
        try:
            api_key = self.credentials.snapshot()
        except ConfigurationError as e:
            raise RemoteOperationError(str(e), status="UNAUTHENTICATED") from e

        headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}
        try:
            async with self.rate_limiter:
                async with httpx.AsyncClient(
                    base_url=self.settings.base_url,
                    timeout=self.timeout,
                    transport=self.transport,
                ) as client:
                    response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteOperationError(f"Deadline exceeded calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise RemoteOperationError(f"Service unavailable calling {path}: {e}") from e

        if response.is_error:
            raise self._error_from_response(response)
        return response.json()  # type: ignore[no-any-return]

    @staticmethod
    def _error_from_response(response: httpx.Response) -> RemoteOperationError:
        message = response.text or response.reason_phrase
        status = None
        try:
            error = response.json().get("error", {})
            message = error.get("message") or message
            status = error.get("status")
        except (ValueError, AttributeError):
            pass
        log.warning(
            "gemini_request_failed",
            status_code=response.status_code,
            status=status,
            url=str(response.request.url),
        )
        return RemoteOperationError(message, status_code=response.status_code, status=status)
