from __future__ import annotations


class RoadmapError(Exception):
    exit_code = 1


class ConfigurationError(RoadmapError):
    exit_code = 1


class GitHubAuthError(RoadmapError):
    exit_code = 2


class GitHubRequestError(RoadmapError):
    exit_code = 3


class ProjectNotFoundError(GitHubRequestError):
    exit_code = 3


class MarkerStructureError(RoadmapError):
    exit_code = 4


class ChartValidationError(RoadmapError):
    exit_code = 5
