"""
Test configuration
"""
import itertools
import os
import random
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set minimal environment variables for testing
os.environ.setdefault("PRIMARY_BOT_TOKEN", "test_primary_token")
os.environ.setdefault("SHADOW_BOT_TOKEN", "test_shadow_token")

from src.routing import load_routing_catalog  # noqa: E402


BOTS_DIR = project_root / "bots"


class ScriptedRandom(random.Random):
    """random() 依次返回给定序列（用完后重复最后一个值）"""

    def __init__(self, values):
        super().__init__(0)
        self._values = list(values)
        self._index = 0

    def random(self):
        value = self._values[min(self._index, len(self._values) - 1)]
        self._index += 1
        return value


class FakeProvider:
    """按模型返回固定文本的 Provider，可指定失败的模型"""

    def __init__(self, name, replies=None, failing=(), default_reply="好的"):
        self.name = name
        self.replies = dict(replies or {})
        self.failing = set(failing)
        self.default_reply = default_reply
        self.calls = []

    async def generate(self, messages, **kwargs):
        model = kwargs.get("model")
        self.calls.append({"model": model, "messages": messages, **kwargs})
        if model in self.failing:
            raise RuntimeError(f"{model} unavailable")
        return {
            "content": self.replies.get(model, self.default_reply),
            "usage": {"prompt_tokens": 10, "completion_tokens": 5},
            "model": model,
        }


def make_transport():
    """send_message 返回递增的 message_id"""
    transport = MagicMock()
    counter = itertools.count(1000)
    transport.send_message = AsyncMock(side_effect=lambda *args, **kwargs: next(counter))
    transport.edit_message = AsyncMock(return_value=True)
    transport.send_typing = AsyncMock()
    return transport


@pytest.fixture
def catalog():
    """config/routing.yaml 中的路由目录"""
    return load_routing_catalog()


@pytest.fixture
def scripted_random():
    return ScriptedRandom


@pytest.fixture
def fake_transport():
    return make_transport()


@pytest.fixture
def personas():
    """仓库自带的 (主Agent, 影子Agent) 人设"""
    from src.bot.persona_loader import PersonaLoader
    loader = PersonaLoader(str(BOTS_DIR))
    return loader.get_persona("bongbong_bot"), loader.get_persona("avatar_bot")
