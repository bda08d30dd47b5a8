import logging
from dataclasses import dataclass

import httpx

from generation_queue.exceptions import BackendError

logger = logging.getLogger(__name__)

MAX_LORAS = 4
DEFAULT_LORA_WEIGHT = 1.0
DEFAULT_CFG_SCALE = 6.0
DEFAULT_TIMEOUT = 300


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    content_type: str = "image/png"


def _compact_number(value):
    # 1.0 -> "1", 0.75 -> "0.75", 0.3333333 -> "0.3333333"
    text = repr(float(value))
    return text[:-2] if text.endswith(".0") else text


def _lora_weights(weights, count):
    if isinstance(weights, (list, tuple)):
        chosen = list(weights[:count])
        chosen += [DEFAULT_LORA_WEIGHT] * (count - len(chosen))
        return chosen
    if weights is None:
        return [DEFAULT_LORA_WEIGHT] * count
    return [weights] * count


def build_payload(params):
    """Translate stored params into the ComfyUI ``/generate`` request body."""
    payload = {
        "prompt_tags": params.prompt_tags,
        "model_name": params.model_name,
        "aspect": params.aspect or 1,
        "seed": int(params.seed),
        "cfg_scale": _compact_number(params.cfg or DEFAULT_CFG_SCALE),
    }

    # names and weights pair by position
    loras = list(params.lora_names[:MAX_LORAS])
    if loras:
        weights = _lora_weights(params.lora_weights, len(loras))
        payload["lora_name"] = ",".join(loras)
        payload["lora_weight"] = ",".join(_compact_number(w) for w in weights)

    return payload


class ComfyUIClient:
    """Stateless adapter for the external ComfyUI generation service.

    Failures are raised as :class:`BackendError` and never retried here.
    """

    def __init__(self, base_url, timeout=DEFAULT_TIMEOUT, client=None):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self._client = client

    def _http(self):
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def generate(self, params):
        if not self.base_url:
            raise BackendError("COMFYUI_API_URL environment variable not set")

        url = f"{self.base_url}/generate"
        payload = build_payload(params)
        logger.info("ComfyUI request", extra={"url": url, "body": payload})

        try:
            response = self._http().post(
                url,
                json=payload,
                headers={"accept": "application/octet-stream"},
            )
        except httpx.HTTPError as e:
            raise BackendError(f"ComfyUI API request failed: {e}") from e

        if not response.is_success:
            raise BackendError(
                f"ComfyUI API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        if not response.content:
            raise BackendError("ComfyUI API returned an empty image", status_code=response.status_code)

        content_type = response.headers.get("content-type") or "image/png"
        return GeneratedImage(data=response.content, content_type=content_type)
