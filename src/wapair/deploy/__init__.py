"""Deploy pipeline: git publishing and Heroku builds."""

from wapair.deploy.git import AsyncCommandExecutor, GitPublisher
from wapair.deploy.heroku import HerokuClient
from wapair.deploy.pipeline import GitHerokuPipeline, make_app_name

__all__ = [
    "AsyncCommandExecutor",
    "GitHerokuPipeline",
    "GitPublisher",
    "HerokuClient",
    "make_app_name",
]
