"""Pipeline module -- ordered stage definitions that deals move through.

Provides the Pipeline/PipelineStage schemas, pure stage lookup and ordering
rules, the SQLAlchemy model, PipelineRepository and PipelineService.
"""
