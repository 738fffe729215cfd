"""
pvehub 命令行入口模块。

提供 CLI 命令：serve（运行 HTTP 服务）、check（验证端点配置文件）和 test（逐个测试端点连通性）。
"""
import asyncio
import logging
import sys

import click

from pvehub import __version__
from pvehub.core.config import load_endpoints, settings


@click.group(invoke_without_command=True)
@click.option("--config", "-c", default=None, help="Endpoints YAML file (defaults to PVEHUB_ENDPOINTS_FILE)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, config, verbose):
    """pvehub - 多集群虚拟化平台连接与命令调度引擎。"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config or settings.endpoints_file
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # 未指定子命令时，显示基本信息
    if ctx.invoked_subcommand is None:
        click.echo(f"pvehub v{__version__}")
        click.echo(f"Endpoints file: {ctx.obj['config_path'] or '(none)'}")
        click.echo("Use --help for available commands")


def _load(config_path):
    if not config_path:
        click.echo("Error: no endpoints file given. Use --config or PVEHUB_ENDPOINTS_FILE.", err=True)
        sys.exit(1)
    try:
        return load_endpoints(config_path)
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"❌ Config error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--host", default=None, help="Bind host (defaults to PVEHUB_API_HOST)")
@click.option("--port", default=None, type=int, help="Bind port (defaults to PVEHUB_API_PORT)")
@click.pass_context
def serve(ctx, host, port):
    """运行 HTTP/WebSocket 服务。"""
    import uvicorn

    from pvehub.main import create_app

    logger = logging.getLogger("pvehub")
    config_path = ctx.obj["config_path"]
    if config_path:
        # 启动前先校验，避免服务起来后才在 lifespan 里失败
        _load(config_path)

    host = host or settings.api_host
    port = port or settings.api_port
    logger.info(f"Starting pvehub v{__version__} on {host}:{port}")
    logger.info(f"Poll interval: {settings.poll_interval:g}s, batch concurrency: {settings.batch_concurrency}")

    app = create_app(endpoints_file=config_path)
    uvicorn.run(app, host=host, port=port, log_config=None)


@cli.command()
@click.pass_context
def check(ctx):
    """验证端点配置文件是否正确。"""
    config_path = ctx.obj["config_path"]
    endpoints = _load(config_path)
    click.echo(f"✅ Config OK: {config_path}")
    click.echo(f"   Endpoints: {len(endpoints)}")
    for ep in endpoints:
        click.echo(f"   - {ep.id}: {ep.login} @ {ep.host}:{ep.port} (tls={'on' if ep.use_tls else 'off'})")


@cli.command()
@click.pass_context
def test(ctx):
    """用全新会话逐个测试端点连通性，任一失败时退出码为 1。"""
    from pvehub.services.cluster_manager import ClusterManager

    endpoints = _load(ctx.obj["config_path"])

    async def _run():
        manager = ClusterManager(settings)
        for ep in endpoints:
            manager.add_endpoint(ep)
        results = {}
        try:
            for ep in endpoints:
                ok = await manager.test_endpoint(ep.id)
                results[ep.id] = (ok, manager.get_connection(ep.id))
        finally:
            await manager.stop()
        return results

    results = asyncio.run(_run())
    failed = 0
    for endpoint_id, (ok, status) in results.items():
        if ok:
            click.echo(f"✅ {endpoint_id}: {status.status.value}")
        else:
            failed += 1
            click.echo(f"❌ {endpoint_id}: {status.status.value} - {status.last_error}")
    if failed:
        sys.exit(1)


def main():
    """CLI 入口函数。"""
    cli()


if __name__ == "__main__":
    main()
