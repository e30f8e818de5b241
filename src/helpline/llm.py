"""
Conversation agent on an OpenAI-compatible chat API (Groq or OpenAI).

Provides:
- Startup model validation (Groq)
- Per-call conversation history with a rolling window
- System prompt carrying the caller's reported issue
- Welcome message generation
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.helpline.config import get_config
from src.helpline.errors import ConfigError, GenerationError

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

ISSUE_KEY = "issue"


@dataclass
class ConversationTurn:
    """A single turn in the conversation."""
    role: str  # "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)


class ConversationHistory:
    """Manages conversation history with a rolling window."""

    def __init__(self, max_turns: int = 10):
        self.max_turns = max_turns
        self._turns: List[ConversationTurn] = []

    def add_exchange(self, user: str, assistant: str) -> None:
        """Record one user message and the reply to it."""
        self._turns.append(ConversationTurn(role="user", content=user))
        self._turns.append(ConversationTurn(role="assistant", content=assistant))
        self._trim()

    def _trim(self) -> None:
        # Keep pairs of turns (user + assistant)
        max_messages = self.max_turns * 2
        if len(self._turns) > max_messages:
            self._turns = self._turns[-max_messages:]

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [{"role": turn.role, "content": turn.content} for turn in self._turns]

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)


def _is_portuguese(language: str) -> bool:
    return (language or "").strip().lower().startswith("pt")


def get_system_prompt(config: Optional[Any] = None, issue: Optional[str] = None) -> str:
    """
    System prompt for reply generation.

    Defines the persona and, when known, the problem the caller asked about.
    """
    if config is None:
        config = get_config()

    issue = (issue or "").strip()

    if _is_portuguese(config.language):
        prompt = f"""Você é {config.agent_name}, um assistente útil e amigável em uma chamada telefônica.
Responda de forma clara, concisa e natural em português brasileiro.

REGRAS:
- Respostas curtas (no máximo 2 frases), porque a resposta será falada.
- Linguagem natural e conversacional.
- Sem marcadores, listas ou formatação.
- Se não entender, peça para a pessoa repetir ou explicar melhor."""
        if issue:
            prompt += f"""

CONTEXTO DO PROBLEMA DO USUÁRIO: {issue}
- Mantenha o foco nesse problema e relacione as respostas com ele."""
        return prompt

    prompt = f"""You are {config.agent_name}, a friendly and helpful assistant on a phone call.
Reply clearly, concisely and naturally in the caller's language ({config.language}).

RULES:
- Keep replies short (2 sentences at most); they are spoken aloud
- Use natural, conversational language
- No bullet points, lists or formatting
- If you don't understand, ask the caller to repeat or clarify"""
    if issue:
        prompt += f"""

CALLER'S PROBLEM: {issue}
- Stay focused on this problem and relate your replies to it"""
    return prompt


def get_welcome_prompt(config: Optional[Any] = None, issue: str = "") -> str:
    """Instruction for a one-sentence opening line tailored to the issue."""
    if config is None:
        config = get_config()

    if _is_portuguese(config.language):
        return f"""Crie uma MENSAGEM DE BOAS-VINDAS inicial em português brasileiro para o usuário.

Contexto do problema do usuário: {issue}

Regras:
- Apenas UMA frase curta e natural
- Seja amigável e acolhedor
- Não repita o problema completo, apenas uma introdução
- Use linguagem conversacional

Exemplo: "Olá! Vou te ajudar a resolver isso. Pode me contar mais detalhes?\""""

    return f"""Write the opening line of this phone call in {config.language}.

Caller's problem: {issue}

Rules:
- Exactly ONE short, natural sentence
- Warm and welcoming
- Don't repeat the whole problem, just introduce the conversation

Example: "Hi! I'll help you sort this out. Can you tell me a bit more?\""""


def clean_reply(text: str) -> str:
    """Strip markdown emphasis the model sometimes emits."""
    return (text or "").replace("*", "").strip()


async def validate_groq_model(api_key: str, model_name: str) -> bool:
    """
    Validate that the configured Groq model exists.

    Calls GET https://api.groq.com/openai/v1/models to check.

    Raises:
        ConfigError: If the model doesn't exist or the API can't be reached
    """
    logger.info("Validating Groq model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{GROQ_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to Groq API", error=str(e))
            raise ConfigError(
                f"Failed to connect to Groq API: {e}. "
                "Check your network connection and GROQ_API_KEY."
            ) from e

    if response.status_code != 200:
        logger.error(
            "Failed to fetch Groq models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise ConfigError(
            f"Failed to validate Groq model. API returned status {response.status_code}. "
            "Check your GROQ_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(i for i in model_ids if i)[:10])
        logger.error("Groq model not found", requested_model=model_name, available_models=available)
        raise ConfigError(
            f"GROQ_MODEL '{model_name}' not found in available models. "
            f"Available models include: {available}"
        )

    logger.info("Groq model validated successfully", model=model_name)
    return True


class ConversationAgent:
    """
    Reply and welcome generation, with one history per call.

    Uses the OpenAI-compatible chat completions API; Groq is reached through
    its base URL.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[Any] = None):
        if config is None:
            config = get_config()
        self.config = config

        provider = (config.llm_provider or "groq").strip().lower()
        if provider == "groq":
            self.model = config.groq_model
            api_key, base_url = config.groq_api_key, GROQ_BASE_URL
        elif provider == "openai":
            self.model = config.openai_model
            api_key, base_url = config.openai_api_key, None
        else:
            raise ConfigError(f"Unsupported LLM_PROVIDER: {config.llm_provider}")
        self.provider = provider

        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._histories: Dict[str, ConversationHistory] = {}

    def history(self, call_id: str) -> ConversationHistory:
        history = self._histories.get(call_id)
        if history is None:
            history = ConversationHistory(max_turns=self.config.max_history_turns)
            self._histories[call_id] = history
        return history

    def forget(self, call_id: str) -> None:
        """Drop the conversation history of a finished call."""
        if self._histories.pop(call_id, None) is not None:
            logger.debug("Conversation history cleared", call_id=call_id)

    def __len__(self) -> int:
        return len(self._histories)

    async def validate_model(self) -> bool:
        if self.provider == "groq":
            return await validate_groq_model(self.config.groq_api_key, self.model)
        return True

    async def _complete(self, messages: List[Dict[str, str]]) -> str:
        start_time = time.time()
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.config.llm_max_tokens,
                temperature=self.config.llm_temperature,
            )
        except Exception as e:
            logger.error("LLM generation failed", model=self.model, error=str(e))
            raise GenerationError(f"LLM request failed: {e}") from e

        try:
            text = clean_reply(response.choices[0].message.content)
        except (AttributeError, IndexError, TypeError) as e:
            raise GenerationError(f"Malformed LLM response: {e}") from e
        if not text:
            raise GenerationError("LLM returned an empty reply")

        logger.debug(
            "LLM completion",
            model=self.model,
            total_ms=round((time.time() - start_time) * 1000, 1),
            chars=len(text),
        )
        return text

    async def generate_reply(
        self,
        call_id: str,
        transcript: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Reply to one recognized utterance.

        Raises:
            GenerationError: If the model call fails or returns nothing
        """
        issue = (metadata or {}).get(ISSUE_KEY)
        history = self.history(call_id)

        messages = [{"role": "system", "content": get_system_prompt(self.config, issue=issue)}]
        messages.extend(history.get_messages())
        messages.append({"role": "user", "content": transcript})

        logger.info("Generating reply", call_id=call_id, text=transcript[:100])
        reply = await self._complete(messages)
        history.add_exchange(transcript, reply)
        logger.info("Reply generated", call_id=call_id, text=reply[:100])
        return reply

    async def generate_welcome(self, call_id: str, metadata: Optional[Mapping[str, Any]] = None) -> str:
        """One-sentence opening line tailored to the caller's issue."""
        issue = (metadata or {}).get(ISSUE_KEY) or ""
        messages = [
            {"role": "system", "content": get_system_prompt(self.config, issue=issue)},
            {"role": "user", "content": get_welcome_prompt(self.config, issue=issue)},
        ]
        logger.info("Generating welcome message", call_id=call_id, issue=issue[:100])
        return await self._complete(messages)


def create_agent(config: Optional[Any] = None) -> ConversationAgent:
    return ConversationAgent(config)


async def initialize_llm(config: Optional[Any] = None) -> ConversationAgent:
    """
    Create and validate the conversation agent at startup.

    Raises:
        ConfigError: If the configured model can't be validated
    """
    agent = create_agent(config)
    await agent.validate_model()
    return agent
