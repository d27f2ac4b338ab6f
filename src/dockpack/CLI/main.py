# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
import time
from pathlib import Path
from typing import List

import click

from ..AUTH.auth_factory import CredentialResolver
from ..AUTH.aws_credentials import default_credentials_chain
from ..BUILDERS.build_context import BuildContextAssembler
from ..errors import DockpackError
from ..MANAGERS.build_orchestrator import BuildOrchestrator
from ..MANAGERS.container_tasks import ContainerTasks
from ..MANAGERS.watch_manager import WatchService
from ..MODELS.image_configuration import ImageConfiguration, WatchMode
from ..MODELS.project_config import ProjectConfiguration
from ..PARSERS.config_parser import DEFAULT_CONFIG_FILE, ConfigParser
from ..REGISTRY.pull_cache import ImagePullCache, ImagePullManager, PullPolicy
from ..REGISTRY.registry_client import RegistryClient
from ..UTILS.progress import ConsoleProgressReporter


@click.group()
@click.option('--file', '-f', default=DEFAULT_CONFIG_FILE, help='Project file')
@click.option('--env-file', type=click.Path(dir_okay=False), default=None, help='.env file with interpolation defaults')
@click.option('--docker-host', envvar='DOCKER_HOST', default=None, help='Container engine (unix://, tcp://, http(s)://)')
@click.option('--aws-sdk', is_flag=True, help='Also use the boto3 credentials chain for ECR registries')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, file, env_file, docker_host, aws_sdk, verbose):
    """
    dockpack - build container images from project output and publish them.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['env_file'] = env_file
    ctx.obj['docker_host'] = docker_host
    ctx.obj['aws_sdk'] = aws_sdk


def _load(ctx) -> ProjectConfiguration:
    if 'config' not in ctx.obj:
        file = ctx.obj['file']
        if not Path(file).exists():
            raise click.ClickException(f"{file} not found.")
        parser = ConfigParser(env_file=ctx.obj['env_file'])
        ctx.obj['config'] = parser.parse(file)
        ctx.obj['properties'] = parser.context
    return ctx.obj['config']


def _orchestrator(ctx, retries=None, skip_tag=None, policy=None) -> BuildOrchestrator:
    config = _load(ctx)
    engine = config.engine
    if ctx.obj['docker_host']:
        engine = engine.model_copy(update={'host': ctx.obj['docker_host']})
    client = RegistryClient.from_settings(engine)
    assembler = BuildContextAssembler(config.base_dir, config.output_dir, ctx.obj.get('properties'))
    credentials = CredentialResolver(
        config.registry,
        aws_credentials=default_credentials_chain(use_sdk=ctx.obj['aws_sdk']),
    )
    return BuildOrchestrator(
        client,
        assembler,
        credentials,
        registry_config=config.registry,
        pull_manager=ImagePullManager(ImagePullCache(), policy or config.pull_policy),
        reporter=ConsoleProgressReporter(),
        retries=config.retries if retries is None else retries,
        skip_tag=skip_tag or config.skip_tag,
    )


def _select(config: ProjectConfiguration, names) -> List[ImageConfiguration]:
    if not names:
        return list(config.images)
    selected = [i for i in config.images if i.name in names or (i.alias and i.alias in names)]
    unknown = set(names) - {i.name for i in selected} - {i.alias for i in selected if i.alias}
    if unknown:
        raise click.ClickException(f"Unknown image(s): {', '.join(sorted(unknown))}")
    return selected


@cli.command()
@click.argument('images', nargs=-1)
@click.option('--skip-tag', is_flag=True, help='Do not apply additional tags')
@click.pass_context
def build(ctx, images, skip_tag):
    """Build images."""
    try:
        orchestrator = _orchestrator(ctx, skip_tag=skip_tag)
        results = orchestrator.build_images(_select(_load(ctx), images))
    except DockpackError as e:
        raise click.ClickException(str(e)) from e
    for name, image_id in results.items():
        click.echo(f"Built {name} ({image_id or 'unknown id'})")


@cli.command()
@click.argument('images', nargs=-1)
@click.option('--retries', type=int, default=None, help='Retries for failed pushes')
@click.option('--skip-tag', is_flag=True, help='Do not push additional tags')
@click.option('--registry', default=None, help='Registry for images without one in their name')
@click.pass_context
def push(ctx, images, retries, skip_tag, registry):
    """Push images to their registry."""
    try:
        config = _load(ctx)
        if registry:
            config.registry.registry = registry
        orchestrator = _orchestrator(ctx, retries=retries, skip_tag=skip_tag)
        selected = _select(config, images)
        orchestrator.push_images(selected)
    except DockpackError as e:
        raise click.ClickException(str(e)) from e
    for image in selected:
        if image.build is not None:
            click.echo(f"Pushed {image.name}")


@cli.command()
@click.argument('images', nargs=-1)
@click.option('--policy', type=click.Choice([p.value for p in PullPolicy], case_sensitive=False), default=None)
@click.option('--registry', default=None, help='Registry for images without one in their name')
@click.pass_context
def pull(ctx, images, policy, registry):
    """Pull images (the configured ones when no names are given)."""
    try:
        orchestrator = _orchestrator(ctx, policy=policy)
        names = list(images) or [i.name for i in _load(ctx).images]
        for name in names:
            pulled = orchestrator.pull_image_with_policy(name, registry=registry)
            click.echo(f"{'Pulled' if pulled else 'Up to date'}: {name}")
    except DockpackError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@click.argument('images', nargs=-1)
@click.option('--interval', type=float, default=None, help='Seconds between checks')
@click.option('--mode', type=click.Choice([m.value for m in WatchMode]), default=None)
@click.pass_context
def watch(ctx, images, interval, mode):
    """Rebuild, restart or sync containers when project files change."""
    try:
        config = _load(ctx)
        orchestrator = _orchestrator(ctx)
        settings = config.watch
        if interval is not None:
            settings = settings.model_copy(update={'interval': interval})
        if mode is not None:
            settings = settings.model_copy(update={'mode': WatchMode(mode)})
        service = WatchService(orchestrator, ContainerTasks(orchestrator.client).context(settings))
        service.start(_select(config, images))
    except DockpackError as e:
        raise click.ClickException(str(e)) from e

    click.echo("Watching... Press Ctrl+C to stop.")
    try:
        while not service.stopped:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping watch...")
    finally:
        service.stop(timeout=5)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
