############################################################
#
# tinychat - Streaming LLM Chat Service
#
# __init__.py: Services package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Services for TinyChat."""

from tinychat.app.services.relay import ChatRelay, ChatTurn, TurnRejected, TurnState

__all__ = ["ChatRelay", "ChatTurn", "TurnRejected", "TurnState"]
