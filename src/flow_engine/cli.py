"""
Conversation Flow Engine CLI
"""
import click
import asyncio
import logging
from typing import Optional

from dotenv import load_dotenv

from .config import Settings
from .core import FlowEngine, FlowParser, OutboundDispatcher, SessionManager, InboundMessage, EngineMessages
from .exceptions import FlowEngineError
from .models.workspace import WhatsAppCredentials
from .storage.repository import (
    InMemorySessionStore, InMemoryWorkspaceRepository, InMemoryChannelInstanceRepository,
    InMemoryFlowLogRepository
)
from .integrations import (
    RecordingMessagingClient, HttpxRequester, OpenAITextGenerator, EchoTextGenerator
)


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
APP_IMPORT_PATH = "flow_engine.api:app"

logger = logging.getLogger(__name__)


def run_server(settings: Settings, host: Optional[str] = None, port: Optional[int] = None, reload: bool = False):
    """
    启动 uvicorn

    多进程和热重载都要求传入应用的导入字符串。会话锁只在单个进程内生效，
    多进程部署时同一发送者的消息必须固定路由到同一个进程。
    """
    import uvicorn

    workers = 1 if reload else max(1, settings.api_workers)
    if workers > 1:
        logger.warning(
            f"Starting {workers} workers: session locks are per process, "
            f"webhooks for one sender must reach the same worker"
        )
    uvicorn.run(
        APP_IMPORT_PATH,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        workers=workers,
        log_level="info"
    )


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to LOG_LEVEL)')
def cli(log_level):
    """Conversation Flow Engine CLI"""
    load_dotenv()
    level = (log_level or Settings.from_env().log_level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
def serve(host, port, reload):
    """Start the API server"""
    settings = Settings.from_env()
    click.echo(f"Starting API server on {host or settings.api_host}:{port or settings.api_port}")
    run_server(settings, host, port, reload or settings.api_reload)


@cli.command()
@click.argument('flow_file', type=click.Path(exists=True, dir_okay=False))
def validate(flow_file):
    """Validate a flow file and print its diagnostics"""
    try:
        graph = FlowParser().parse(flow_file)
    except FlowEngineError as e:
        raise click.ClickException(str(e))

    diagnostics = graph.validate()
    click.echo(f"Flow '{graph.name or graph.id}': {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    for diagnostic in diagnostics:
        click.echo(f"  [{diagnostic.code}] {diagnostic.message}")

    if diagnostics:
        click.echo(f"{len(diagnostics)} problem(s) found")
        raise SystemExit(1)
    click.echo("Flow is valid")


@cli.command()
@click.argument('flow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--user', default='5511999999999@s.whatsapp.net', help='Simulated WhatsApp JID')
@click.option('--message', '-m', 'messages', multiple=True, help='Send these messages and exit')
def chat(flow_file, user, messages):
    """Chat with a flow in the terminal"""
    settings = Settings.from_env()

    try:
        workspace = FlowParser().parse_workspace(flow_file)
    except FlowEngineError as e:
        raise click.ClickException(str(e))

    if not workspace.whatsapp.is_configured:
        workspace.whatsapp = WhatsAppCredentials(base_url="console", instance_name="console")

    messaging = RecordingMessagingClient(
        on_message=lambda message: click.echo(f"bot> {message.content}")
    )
    if settings.openai_api_key:
        text_generator = OpenAITextGenerator(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            default_model=settings.openai_model
        )
    else:
        text_generator = EchoTextGenerator(prefix="[echo] ")

    session_store = InMemorySessionStore()
    workspaces = InMemoryWorkspaceRepository([workspace])
    flow_logs = InMemoryFlowLogRepository()
    engine = FlowEngine(
        session_store=session_store,
        dispatcher=OutboundDispatcher(messaging, InMemoryChannelInstanceRepository()),
        messaging=messaging,
        text_generator=text_generator,
        http=HttpxRequester(timeout=settings.http_timeout_seconds),
        flow_logs=flow_logs,
        messages=EngineMessages(
            invalid_option=settings.invalid_option_message,
            option_reply_hint=settings.option_reply_hint
        )
    )
    manager = SessionManager(engine, session_store, workspaces, flow_logs)

    async def _send(text: str):
        payload = {
            "data": {
                "key": {"remoteJid": user},
                "message": {"conversation": text}
            }
        }
        result = await manager.handle_inbound(workspace.id, InboundMessage.from_payload(payload))
        click.echo(f"[{result.status.value}] {result.message}", err=True)

    async def _run():
        try:
            if messages:
                for text in messages:
                    click.echo(f"you> {text}")
                    await _send(text)
                return

            click.echo(f"Chatting with '{workspace.name}'. Type /quit to exit.")
            while True:
                text = click.prompt("you", prompt_suffix="> ")
                if text.strip() == "/quit":
                    break
                await _send(text)
        finally:
            await engine.http.close()

    try:
        asyncio.run(_run())
    except FlowEngineError as e:
        raise click.ClickException(str(e))


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
