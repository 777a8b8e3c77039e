"""
AI 文本生成能力
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional, List, Dict

from openai import AsyncOpenAI

from .exceptions import TextGenerationError


logger = logging.getLogger(__name__)


DEFAULT_AGENT_SYSTEM_PROMPT = (
    "You are a helpful assistant replying to a customer in a chat conversation. "
    "Answer briefly and in the same language as the user."
)


class TextGenerator(ABC):
    """文本生成接口"""

    @abstractmethod
    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        """根据提示词生成文本"""
        pass

    @abstractmethod
    async def chat_reply(self, user_message: str, system_prompt: Optional[str] = None) -> str:
        """生成对话回复"""
        pass


class OpenAITextGenerator(TextGenerator):
    """OpenAI 兼容接口的文本生成实现"""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        default_model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        max_tokens: int = 1024
    ):
        self.default_model = default_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def _complete(self, messages: List[Dict[str, str]], model: Optional[str] = None) -> str:
        """调用聊天补全接口"""
        try:
            response = await self.client.chat.completions.create(
                model=model or self.default_model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens
            )
        except Exception as e:
            logger.error(f"OpenAI API call failed: {str(e)}", exc_info=True)
            raise TextGenerationError(f"LLM call failed: {str(e)}", e)

        content = response.choices[0].message.content if response.choices else None
        if content is None:
            raise TextGenerationError("LLM returned an empty response")
        return content

    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        return await self._complete([{"role": "user", "content": prompt}], model)

    async def chat_reply(self, user_message: str, system_prompt: Optional[str] = None) -> str:
        messages = [
            {"role": "system", "content": system_prompt or DEFAULT_AGENT_SYSTEM_PROMPT},
            {"role": "user", "content": user_message},
        ]
        return await self._complete(messages)


class EchoTextGenerator(TextGenerator):
    """离线文本生成实现（回显输入，用于测试和本地对话）"""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.prompts: List[str] = []

    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        return f"{self.prefix}{prompt}"

    async def chat_reply(self, user_message: str, system_prompt: Optional[str] = None) -> str:
        self.prompts.append(user_message)
        return f"{self.prefix}{user_message}"
