"""
External collaborators — call provider, WhatsApp transport, reply generation.
"""
from providers.call_provider import CallProvider, ElevenLabsBatchClient
from providers.whatsapp import (
    MessagingTransport, TwilioWhatsAppTransport, normalize_whatsapp_number,
)
from providers.generative import GenerativeCapability, LLMReplyGenerator

__all__ = [
    "CallProvider", "ElevenLabsBatchClient",
    "MessagingTransport", "TwilioWhatsAppTransport", "normalize_whatsapp_number",
    "GenerativeCapability", "LLMReplyGenerator",
]
