import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import anthropic
import google.generativeai as genai
import openai
from google.api_core import exceptions as google_exceptions
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from backend.app.module.Functions_module import setup_logger

logger = setup_logger()

PROVIDER_LABELS = {
    "openai": "OpenAI",
    "gemini": "Gemini",
    "claude": "Claude",
}

NO_RESPONSE = "No response"
NO_CODE = "No code generated."

PLAYWRIGHT_PROMPT = """
You are a senior Playwright automation engineer. Convert the following Gherkin scenario into a Playwright test function in JavaScript. For steps where the selector or page isn't clear, add a TODO comment.

Gherkin Scenario:
{scenario}

Only output the code for the Playwright test function. Do not explain your answer.
"""

RAG_PROMPT = """Use the reference material below, taken from the uploaded project documents, whenever it is relevant to the request. If it is not relevant, ignore it.

REFERENCE MATERIAL:
{context}

REQUEST:
{request}
"""


class ProviderNotConfiguredError(RuntimeError):
    """The provider has no API key configured."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"{PROVIDER_LABELS.get(provider, provider)} is not configured")


class ProviderError(RuntimeError):
    """The provider call failed or timed out."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(message)


@dataclass
class GenerationResult:
    output: str
    sources: List[Dict[str, Any]] = field(default_factory=list)


def build_rag_prompt(request: str, context: str) -> str:
    if not context:
        return request
    return RAG_PROMPT.format(context=context, request=request)


def build_playwright_prompt(scenario: str) -> str:
    return PLAYWRIGHT_PROMPT.format(scenario=scenario)


class AIManager:
    """Central gateway for the LLM providers.

    Provides:
    - one `generate` entry point dispatching to OpenAI, Gemini or Claude
    - optional RAG augmentation through a `RetrievalService`
    - deterministic DemoLLM answers when `settings.demo` is on
    """

    def __init__(self, settings_obj, retrieval=None):
        self.settings = settings_obj
        self.retrieval = retrieval
        self._openai: Optional[AsyncOpenAI] = None
        self._anthropic: Optional[AsyncAnthropic] = None
        self._gemini_configured = False

    def is_configured(self, provider: str) -> bool:
        keys = {
            "openai": self.settings.openai_api_key,
            "gemini": self.settings.gemini_api_key,
            "claude": self.settings.anthropic_api_key,
        }
        return bool(keys.get(provider))

    def provider_status(self) -> Dict[str, str]:
        if self.settings.demo:
            return {p: "demo" for p in PROVIDER_LABELS}
        return {p: ("configured" if self.is_configured(p) else "unavailable") for p in PROVIDER_LABELS}

    async def generate(self, provider: str, prompt: str, model: Optional[str] = None) -> str:
        if provider not in PROVIDER_LABELS:
            raise ValueError(f"Unknown provider: {provider}")

        if self.settings.demo:
            return await DemoLLM().generate(provider, prompt)

        if not self.is_configured(provider):
            raise ProviderNotConfiguredError(provider)

        call = {
            "openai": self._call_openai,
            "gemini": self._call_gemini,
            "claude": self._call_claude,
        }[provider]
        try:
            text = await asyncio.wait_for(call(prompt, model), timeout=self.settings.LLM_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error('{} call timed out after {}s', PROVIDER_LABELS[provider], self.settings.LLM_TIMEOUT)
            raise ProviderError(provider, f"{PROVIDER_LABELS[provider]} request timed out")
        # google-generativeai surfaces google.api_core exceptions and ValueError for blocked prompts
        except (openai.OpenAIError, anthropic.AnthropicError, google_exceptions.GoogleAPIError, ValueError) as e:
            logger.error('{} Error: {}', PROVIDER_LABELS[provider], e)
            raise ProviderError(provider, str(e)) from e
        return text or NO_RESPONSE

    async def _call_openai(self, prompt: str, model: Optional[str]) -> str:
        if self._openai is None:
            self._openai = AsyncOpenAI(api_key=self.settings.openai_api_key)
        completion = await self._openai.chat.completions.create(
            model=model or self.settings.OPENAI_MODEL,
            messages=[{"role": "user", "content": prompt}],
        )
        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""

    async def _call_gemini(self, prompt: str, model: Optional[str]) -> str:
        if not self._gemini_configured:
            genai.configure(api_key=self.settings.gemini_api_key)
            self._gemini_configured = True
        gen_model = genai.GenerativeModel(model or self.settings.GEMINI_MODEL)
        response = await gen_model.generate_content_async(prompt)
        return response.text

    async def _call_claude(self, prompt: str, model: Optional[str]) -> str:
        if self._anthropic is None:
            self._anthropic = AsyncAnthropic(api_key=self.settings.anthropic_api_key)
        msg = await self._anthropic.messages.create(
            model=model or self.settings.CLAUDE_MODEL,
            max_tokens=self.settings.CLAUDE_MAX_TOKENS,
            messages=[{"role": "user", "content": prompt}],
        )
        texts = [block.text for block in msg.content if getattr(block, "type", None) == "text"]
        return texts[0] if texts else ""

    async def _augment(self, query: str, prompt: str, use_rag: bool, top_k: Optional[int]):
        """Look up `query` in the document store and wrap `prompt` with the hits."""
        if not use_rag or self.retrieval is None:
            return prompt, []
        retrieved = await self.retrieval.retrieve(query, top_k)
        if not retrieved:
            return prompt, []
        logger.info('RAG: augmenting prompt with {} source document(s)', len(retrieved.sources))
        return build_rag_prompt(prompt, retrieved.context), retrieved.sources

    async def generate_test_cases(self, provider: str, text: str, use_rag: bool = False, top_k: Optional[int] = None) -> GenerationResult:
        prompt, sources = await self._augment(text, text, use_rag, top_k)
        output = await self.generate(provider, prompt)
        return GenerationResult(output=output, sources=sources)

    async def generate_playwright_code(self, scenario: str, use_rag: bool = False, top_k: Optional[int] = None) -> GenerationResult:
        prompt, sources = await self._augment(scenario, build_playwright_prompt(scenario), use_rag, top_k)
        code = await self.generate("openai", prompt, model=self.settings.PLAYWRIGHT_MODEL)
        if code == NO_RESPONSE:
            code = NO_CODE
        return GenerationResult(output=code, sources=sources)


class DemoLLM:
    """Deterministic demo-mode LLM emulator.

    Echoes a short, provider-tagged answer derived from the prompt so the
    frontend and tests can run without any API key.
    """

    def __init__(self, max_chars: int = 800):
        self.max_chars = max_chars

    async def generate(self, provider: str, prompt: str) -> str:
        label = PROVIDER_LABELS.get(provider, provider)
        if "Gherkin Scenario:" in prompt:
            return (
                f"// (Demo mode - {label}) generated test\n"
                "test('scenario', async ({ page }) => {\n"
                "  // TODO: replace with real steps\n"
                "});"
            )
        body = " ".join(prompt.split())
        if len(body) > self.max_chars:
            body = body[: self.max_chars - 3].rstrip() + "..."
        return f"(Demo mode - {label}) Test cases for: {body}"
