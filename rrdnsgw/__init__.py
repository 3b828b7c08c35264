"""DNS gateway components: message model, wire codec, upstream resolver and UDP transport."""

__version__ = "0.1.0"

__all__ = ["messages", "wire", "upstream", "transport"]