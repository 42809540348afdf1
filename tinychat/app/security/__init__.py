############################################################
#
# tinychat - Streaming LLM Chat Service
#
# __init__.py: Security package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Session identity helpers."""
