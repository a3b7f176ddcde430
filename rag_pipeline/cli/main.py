"""Entry point for the ``rag-pipeline`` command."""

import importlib

import click

# command name -> "module:attribute"
_COMMANDS = {
    "pipeline": "rag_pipeline.cli.pipeline:pipeline",
    "clone": "rag_pipeline.cli.stages:clone",
    "clean": "rag_pipeline.cli.stages:clean",
    "upload": "rag_pipeline.cli.stages:upload",
    "search": "rag_pipeline.cli.search:search",
    "status": "rag_pipeline.cli.status:status",
    "health": "rag_pipeline.cli.status:health",
    "cache": "rag_pipeline.cli.cache:cache",
}


class LazyGroup(click.Group):
    """Resolves subcommands on first use.

    Command modules pull in the aiohttp, OpenAI and RedisVL client stacks.
    Running one command imports only that command's module.
    """

    def list_commands(self, ctx):
        return list(_COMMANDS)

    def get_command(self, ctx, name):
        target = _COMMANDS.get(name)
        if target is None:
            return None
        module_name, attribute = target.split(":", 1)
        return getattr(importlib.import_module(module_name), attribute)


@click.command(cls=LazyGroup)
def main():
    """Incrementally clone, enrich and index a document drive into Redis."""


if __name__ == "__main__":
    main()
