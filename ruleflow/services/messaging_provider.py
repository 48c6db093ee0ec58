import uuid
from dataclasses import dataclass
from typing import Protocol

MESSAGE_CHANNELS = ("whatsapp", "email", "sms", "instagram")


@dataclass(frozen=True)
class MessageSendRequest:
    tenant_id: str
    channel: str
    recipient: str
    content: str
    template_id: str | None = None


@dataclass(frozen=True)
class MessageSendResult:
    provider: str
    message_id: str
    status: str


class MessagingProvider(Protocol):
    name: str

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        ...


class StubChannelProvider:
    def __init__(self, channel: str):
        self.channel = channel
        self.name = f"{channel}_stub"

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        return MessageSendResult(
            provider=self.name,
            message_id=f"msg-{uuid.uuid4().hex[:14]}",
            status="sent",
        )


_MESSAGING_PROVIDERS: dict[str, MessagingProvider] = {
    f"{channel}_stub": StubChannelProvider(channel) for channel in MESSAGE_CHANNELS
}


def register_messaging_provider(provider: MessagingProvider) -> None:
    _MESSAGING_PROVIDERS[provider.name.strip().lower()] = provider


def get_messaging_provider(name: str) -> MessagingProvider:
    normalized = (name or "").strip().lower()
    provider = _MESSAGING_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_MESSAGING_PROVIDERS))
        raise ValueError(f"Unknown messaging provider '{name}'. Available: {available}")
    return provider


def provider_name_for_channel(channel: str, flavor: str) -> str:
    return f"{(channel or '').strip().lower()}_{(flavor or 'stub').strip().lower()}"
