"""
Chat-completion client for the action orchestration engine.

Talks to any OpenAI-compatible /chat/completions endpoint with tool calling.

Features:
- Tool calling: tools + tool_choice passed through, tool_calls parsed back
- Model-family parameters: new-style models get max_completion_tokens and
  no temperature
- Circuit Breaker: open/closed/half-open
- LLMStats: success_rate, avg_response_time, token totals
- Retry: exponential backoff on transport errors and 5xx/429
- Cost estimate per call from the settings pricing table
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import requests

from src.logger import logger
from src.settings import settings


class LLMError(Exception):
    """Model transport failed after all retries, or the circuit is open."""


class CircuitBreaker:
    """
    Consecutive-failure breaker.

    Opens after `threshold` failed calls in a row and refuses calls for
    `cooldown` seconds; the first call after the cooldown is let through
    (half-open) and closes the breaker again on success.
    """

    def __init__(self, threshold: int, cooldown: float):
        self.threshold = threshold
        self.cooldown = cooldown
        self.consecutive_failures = 0
        self.opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.opened_at is not None

    def allows_call(self) -> bool:
        if self.opened_at is None:
            return True
        if time.monotonic() - self.opened_at >= self.cooldown:
            logger.info("Circuit breaker half-open, letting one call through")
            return True
        return False

    def on_success(self) -> None:
        if self.opened_at is not None:
            logger.info("Circuit breaker closed")
        self.consecutive_failures = 0
        self.opened_at = None

    def on_failure(self) -> bool:
        """Count a failed call; True when this failure tripped the breaker."""
        self.consecutive_failures += 1
        if self.consecutive_failures < self.threshold:
            return False
        tripped = self.opened_at is None
        self.opened_at = time.monotonic()
        if tripped:
            logger.error("Circuit breaker opened", failures=self.consecutive_failures, cooldown=self.cooldown)
        return tripped


@dataclass
class LLMStats:
    """Client statistics"""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_retries: int = 0
    circuit_breaker_trips: int = 0
    total_response_time_ms: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 100.0
        return (self.successful_requests / self.total_requests) * 100

    @property
    def average_response_time_ms(self) -> float:
        if self.successful_requests == 0:
            return 0.0
        return self.total_response_time_ms / self.successful_requests


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ToolCall:
    """One function call requested by the model (arguments kept as raw JSON text)."""
    id: str
    name: str
    arguments: str = ""


@dataclass
class ChatCompletion:
    """Parsed assistant turn."""
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: Optional[str] = None

    def assistant_message(self) -> Dict[str, Any]:
        """Message to append to the running conversation before tool results."""
        message: Dict[str, Any] = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return message


def is_new_style_model(model: str) -> bool:
    """Models that reject temperature and take max_completion_tokens."""
    markers = settings.get_nested("llm.new_style_model_markers", []) or []
    name = (model or "").lower()
    return any(marker in name for marker in markers)


def estimate_cost(model: str, usage: TokenUsage) -> float:
    """
    Estimated cost in USD from the per-1K-token pricing table.

    Unknown models use llm.default_pricing.
    """
    pricing = settings.get_nested("llm.pricing", {}) or {}
    price = pricing.get(model) or settings.get_nested("llm.default_pricing", {"input": 0.0, "output": 0.0})
    return (
        usage.prompt_tokens / 1000 * float(price.get("input", 0.0))
        + usage.completion_tokens / 1000 * float(price.get("output", 0.0))
    )


class ChatCompletionClient:
    """
    OpenAI-compatible chat-completion client with tool calling.

    Every call is bounded by `timeout`; transport failures are retried with
    exponential backoff and counted by the circuit breaker. When every
    attempt fails, LLMError is raised: a turn without a model answer is a
    failed turn, there is no canned fallback text here.
    """

    # Retry
    MAX_RETRIES: int = 3
    INITIAL_DELAY: float = 1.0
    MAX_DELAY: float = 10.0
    BACKOFF_MULTIPLIER: float = 2.0

    # Circuit breaker
    CIRCUIT_BREAKER_THRESHOLD: int = 5
    CIRCUIT_BREAKER_TIMEOUT: int = 60

    def __init__(
        self,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        enable_circuit_breaker: bool = True,
        enable_retry: bool = True
    ):
        """
        Args:
            model: Default model (settings.llm.model when omitted)
            base_url: API base URL (settings.llm.base_url when omitted)
            api_key: Default credential (settings.llm.api_key when omitted)
            timeout: Request timeout in seconds
            enable_circuit_breaker: Enable circuit breaker
            enable_retry: Enable retry with exponential backoff
        """
        self.model = model or settings.llm.model
        self.base_url = base_url or settings.llm.base_url
        self.api_key = api_key if api_key is not None else settings.llm.api_key
        self.timeout = timeout or settings.llm.timeout

        self._enable_circuit_breaker = enable_circuit_breaker
        self._enable_retry = enable_retry

        self._breaker = CircuitBreaker(self.CIRCUIT_BREAKER_THRESHOLD, self.CIRCUIT_BREAKER_TIMEOUT)
        self._stats = LLMStats()

    def reset(self) -> None:
        """Reset statistics"""
        self._stats = LLMStats()

    def reset_circuit_breaker(self) -> None:
        self._breaker = CircuitBreaker(self.CIRCUIT_BREAKER_THRESHOLD, self.CIRCUIT_BREAKER_TIMEOUT)

    @property
    def stats(self) -> LLMStats:
        return self._stats

    @property
    def is_circuit_open(self) -> bool:
        return self._breaker.is_open

    # =========================================================================
    # CHAT COMPLETION
    # =========================================================================

    def build_payload(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Request body for /chat/completions, honouring the model family."""
        model = model or self.model
        max_tokens = max_tokens or settings.llm.max_tokens
        payload: Dict[str, Any] = {"model": model, "messages": messages}

        if is_new_style_model(model):
            payload["max_completion_tokens"] = max_tokens
        else:
            payload["max_tokens"] = max_tokens
            payload["temperature"] = (
                temperature if temperature is not None else settings.llm.temperature
            )

        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice or "auto"
        return payload

    def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        api_key: Optional[str] = None,
    ) -> ChatCompletion:
        """
        Run one chat completion with resilience.

        Args:
            messages: Conversation so far (system, history, tool results)
            tools: Tool schema list; omitted entirely when None/empty
            tool_choice: "auto" | "required" | "none"
            model: Per-agent model override
            max_tokens: Per-agent token limit
            temperature: Per-agent temperature (ignored for new-style models)
            api_key: Per-account credential override

        Returns:
            ChatCompletion

        Raises:
            LLMError: circuit open or every attempt failed
        """
        self._stats.total_requests += 1
        start_time = time.time()

        if self._enable_circuit_breaker and not self._breaker.allows_call():
            logger.warning("Circuit breaker open, refusing model call")
            self._stats.failed_requests += 1
            raise LLMError("circuit breaker open")

        payload = self.build_payload(messages, tools, tool_choice, model, max_tokens, temperature)

        last_error: Optional[Exception] = None
        delay = self.INITIAL_DELAY
        max_attempts = self.MAX_RETRIES if self._enable_retry else 1

        for attempt in range(max_attempts):
            try:
                data = self._call_llm(payload, api_key or self.api_key)
                completion = self._parse(data)

                elapsed_ms = (time.time() - start_time) * 1000
                self._stats.successful_requests += 1
                self._stats.total_response_time_ms += elapsed_ms
                self._stats.prompt_tokens += completion.usage.prompt_tokens
                self._stats.completion_tokens += completion.usage.completion_tokens
                self._breaker.on_success()

                logger.debug(
                    "Model request successful",
                    attempt=attempt + 1,
                    elapsed_ms=round(elapsed_ms, 1),
                    tool_calls=len(completion.tool_calls),
                )
                return completion

            except requests.exceptions.HTTPError as e:
                last_error = e
                status = e.response.status_code if e.response is not None else 0
                logger.warning(f"Model HTTP {status} (attempt {attempt + 1}/{max_attempts})")
                if 400 <= status < 500 and status != 429:
                    break
            except requests.exceptions.Timeout as e:
                last_error = e
                logger.warning(f"Model timeout (attempt {attempt + 1}/{max_attempts})")
            except requests.exceptions.ConnectionError as e:
                last_error = e
                logger.warning(f"Model connection error (attempt {attempt + 1}/{max_attempts})")
            except requests.exceptions.RequestException as e:
                last_error = e
                logger.warning(f"Model request failed (attempt {attempt + 1}/{max_attempts})")
            except ValueError as e:
                last_error = e
                logger.error(f"Model response unreadable (attempt {attempt + 1}/{max_attempts}): {str(e)[:100]}")

            if attempt < max_attempts - 1:
                self._stats.total_retries += 1
                logger.debug(f"Retrying in {delay:.1f}s...")
                time.sleep(delay)
                delay = min(delay * self.BACKOFF_MULTIPLIER, self.MAX_DELAY)

        self._stats.failed_requests += 1
        if self._enable_circuit_breaker and self._breaker.on_failure():
            self._stats.circuit_breaker_trips += 1

        logger.error(
            "Model all retries failed",
            error=str(last_error)[:100] if last_error else "unknown",
        )
        raise LLMError(str(last_error) if last_error else "model request failed")

    def _call_llm(self, payload: Dict[str, Any], api_key: str) -> Dict[str, Any]:
        """
        Raw POST without retry or circuit breaker.

        Tests mock this method.
        """
        base_url_normalized = self.base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        response = requests.post(
            f"{base_url_normalized}/chat/completions",
            json=payload,
            headers=headers,
            timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _parse(data: Dict[str, Any]) -> ChatCompletion:
        choices = data.get("choices", [])
        if not choices:
            raise ValueError("Empty response from model")

        choice = choices[0]
        message = choice.get("message", {}) or {}
        tool_calls = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function", {}) or {}
            tool_calls.append(ToolCall(
                id=raw.get("id", ""),
                name=function.get("name", ""),
                arguments=function.get("arguments", "") or "",
            ))

        usage_raw = data.get("usage") or {}
        usage = TokenUsage(
            prompt_tokens=int(usage_raw.get("prompt_tokens", 0) or 0),
            completion_tokens=int(usage_raw.get("completion_tokens", 0) or 0),
            total_tokens=int(usage_raw.get("total_tokens", 0) or 0),
        )
        return ChatCompletion(
            content=(message.get("content") or "").strip(),
            tool_calls=tool_calls,
            usage=usage,
            finish_reason=choice.get("finish_reason"),
        )

    # =========================================================================
    # STATS & HEALTH
    # =========================================================================

    def get_stats_dict(self) -> Dict[str, Any]:
        stats = asdict(self._stats)
        del stats["total_response_time_ms"]
        stats["success_rate"] = round(self._stats.success_rate, 1)
        stats["average_response_time_ms"] = round(self._stats.average_response_time_ms, 1)
        stats["circuit_breaker_open"] = self._breaker.is_open
        return stats

    def health_check(self) -> bool:
        """
        Check that the endpoint answers.

        Returns:
            True when GET /models returns 200
        """
        try:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            response = requests.get(
                f"{self.base_url.rstrip('/')}/models", headers=headers, timeout=5
            )
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False
