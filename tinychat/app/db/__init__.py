############################################################
#
# tinychat - Streaming LLM Chat Service
#
# __init__.py: Database package initialization
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Database package."""
