from herald.config.settings import DeliveryConfig, configure_logging

__all__ = ["DeliveryConfig", "configure_logging"]
