import base64
import logging
from typing import Optional, Sequence

import anthropic
from google import genai
from google.genai import types
from openai import OpenAI

from services.ai.base import AIProvider, ImageInput

logger = logging.getLogger("api.ai.providers")


def _data_uri(image: ImageInput) -> str:
    return f"data:{image.mime_type};base64,{base64.b64encode(image.data).decode('ascii')}"


class OpenAIProvider(AIProvider):
    name = "openai"
    supports_json_mode = True
    default_model = "gpt-4o"

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self):
        if self._client is None:
            kwargs = {"api_key": self.api_key, "max_retries": 0}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = OpenAI(**kwargs)
        return self._client

    def _messages(self, prompt: str, system_prompt: Optional[str], images: Sequence[ImageInput]) -> list:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if images:
            content = [{"type": "text", "text": prompt}]
            for image in images:
                content.append({"type": "image_url", "image_url": {"url": _data_uri(image)}})
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": "user", "content": prompt})
        return messages

    def _complete(self, prompt, system_prompt, images, json_mode) -> str:
        kwargs = {
            "model": self.params.model or self.default_model,
            "messages": self._messages(prompt, system_prompt, images),
        }
        if self.params.temperature is not None:
            kwargs["temperature"] = self.params.temperature
        if self.params.max_tokens is not None:
            kwargs["max_tokens"] = self.params.max_tokens
        if self.params.top_p is not None:
            kwargs["top_p"] = self.params.top_p
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        resp = self._get_client().chat.completions.create(**kwargs)
        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""


class OpenRouterProvider(OpenAIProvider):
    name = "openrouter"
    # json_object is not honoured by every routed model
    supports_json_mode = False
    default_model = "openai/gpt-4o"

    def is_configured(self) -> bool:
        return bool(self.api_key and self.base_url)


class CustomProvider(OpenAIProvider):
    """Any OpenAI-compatible endpoint (vLLM, Ollama, LM Studio). The key is optional."""

    name = "custom"
    supports_json_mode = False
    default_model = ""

    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _get_client(self):
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key or "not-needed", base_url=self.base_url, max_retries=0)
        return self._client


class AnthropicProvider(AIProvider):
    name = "anthropic"
    default_model = "claude-3-5-sonnet-20241022"
    default_max_tokens = 4096

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self):
        if self._client is None:
            self._client = anthropic.Anthropic(api_key=self.api_key, max_retries=0)
        return self._client

    def _complete(self, prompt, system_prompt, images, json_mode) -> str:
        content = []
        for image in images:
            content.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": image.mime_type,
                        "data": base64.b64encode(image.data).decode("ascii"),
                    },
                }
            )
        content.append({"type": "text", "text": prompt})

        kwargs = {
            "model": self.params.model or self.default_model,
            "max_tokens": self.params.max_tokens or self.default_max_tokens,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if self.params.temperature is not None:
            kwargs["temperature"] = self.params.temperature
        if self.params.top_p is not None:
            kwargs["top_p"] = self.params.top_p

        resp = self._get_client().messages.create(**kwargs)
        return "".join(getattr(block, "text", "") for block in (resp.content or []))


class GeminiProvider(AIProvider):
    name = "gemini"
    default_model = "gemini-2.0-flash"

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self):
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def _complete(self, prompt, system_prompt, images, json_mode) -> str:
        contents = [types.Part.from_bytes(data=image.data, mime_type=image.mime_type) for image in images]
        contents.append(prompt)

        config = types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            temperature=self.params.temperature,
            max_output_tokens=self.params.max_tokens,
            top_p=self.params.top_p,
        )
        resp = self._get_client().models.generate_content(
            model=self.params.model or self.default_model,
            contents=contents,
            config=config,
        )
        return resp.text or ""


PROVIDER_CLASSES = {
    OpenAIProvider.name: OpenAIProvider,
    AnthropicProvider.name: AnthropicProvider,
    GeminiProvider.name: GeminiProvider,
    OpenRouterProvider.name: OpenRouterProvider,
    CustomProvider.name: CustomProvider,
}
