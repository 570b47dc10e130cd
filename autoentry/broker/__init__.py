"""
Broker collaborator interface and an in-memory paper implementation.
"""
from .base import BrokerClient, BrokerResponse, raise_for_response
from .paper import PaperBroker

__all__ = ["BrokerClient", "BrokerResponse", "raise_for_response", "PaperBroker"]
