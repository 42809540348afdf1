############################################################
#
# tinychat - Streaming LLM Chat Service
#
# __init__.py: Root package initialization and version definition
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""TinyChat - Streaming chat over pluggable LLM providers."""

__version__ = "0.3.0"
