import json
from typing import Any, Dict, List, Optional

import httpx


class ImageGenerationError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ImageClient:
    """OpenAI-compatible ``/images/generations`` client returning data URLs."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        size: str = "1024x1024",
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.size = size
        self.client = httpx.AsyncClient(timeout=180)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        return response.text

    async def generate_image(self, prompt: str, count: int = 1) -> Dict[str, List[Dict[str, Any]]]:
        cleaned = (prompt or "").strip()
        if not cleaned:
            raise ImageGenerationError("prompt is required")
        payload = {
            "model": self.model,
            "prompt": cleaned,
            "n": count,
            "size": self.size,
            "response_format": "b64_json",
        }
        url = f"{self.base_url}/images/generations"
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            raise ImageGenerationError(
                f"image generation failed ({exc.response.status_code})", exc.response.status_code, detail
            ) from exc
        except httpx.RequestError as exc:
            raise ImageGenerationError(f"image generation request failed: {exc}") from exc
        data = resp.json()
        images: List[Dict[str, Any]] = []
        for item in data.get("data") or []:
            if item.get("b64_json"):
                src = f"data:image/png;base64,{item['b64_json']}"
            elif item.get("url"):
                src = item["url"]
            else:
                continue
            images.append({"src": src, "alt": item.get("revised_prompt") or cleaned})
        return {"images": images}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
