"""
Engine facade and command line entry point.

``SyncEngine`` wires the repository, credential provider, discovery
service, job orchestrator, scheduler and audit trail together and exposes
the operations callers use. ``main()`` drives it from the command line.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional

from directory_sync.adapters import create_adapter, get_adapter_class
from directory_sync.audit import AuditTrail, new_correlation_id
from directory_sync.config import ConfigurationError, DirectorySettings, EngineSettings, load_config
from directory_sync.credentials import CredentialProvider, EnvironmentCredentialProvider
from directory_sync.discovery import DiscoveryResult, DiscoveryService
from directory_sync.errors import SyncEngineError
from directory_sync.jobs import SyncJobOrchestrator
from directory_sync.ldap_client import DirectoryClient, DiscoveryOptions
from directory_sync.logging_setup import setup_logging
from directory_sync.models import Actor, AuditEvent, ChangeSet, DirectoryServer, SyncJob, ToolSyncConfig
from directory_sync.repository import InMemoryRepository, Repository
from directory_sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


class SyncEngine:
    """
    Directory sync engine.

    Coordinates discovery, previews and sync jobs across the configured
    directory servers and tools.
    """

    def __init__(self, config: Dict[str, Any], repository: Optional[Repository] = None,
                 credential_provider: Optional[CredentialProvider] = None,
                 adapter_factory=create_adapter, client_factory=DirectoryClient):
        """
        Initialize the engine.

        Args:
            config: Validated configuration dictionary (see ``load_config``)
            repository: Storage backend; defaults to an in-memory repository seeded from config
            credential_provider: Secret source; defaults to environment variables
            adapter_factory: Builds tool adapters for tool configs
            client_factory: Builds directory clients for servers
        """
        self.config = config
        self.engine_settings = EngineSettings.from_config(config)
        self.directory_settings = DirectorySettings.from_config(config)
        self.repository = repository or InMemoryRepository.from_config(config)
        self.credential_provider = credential_provider or EnvironmentCredentialProvider()

        audit_config = config.get('audit', {})
        self.audit = AuditTrail(
            self.repository,
            forward_url=audit_config.get('forward_url'),
            forward_timeout=audit_config.get('forward_timeout', 5),
        )
        self.discovery = DiscoveryService(
            self.repository, self.credential_provider, self.directory_settings,
            audit=self.audit, client_factory=client_factory,
        )
        self.orchestrator = SyncJobOrchestrator(
            self.repository, self.discovery, self.credential_provider,
            audit=self.audit, settings=self.engine_settings, adapter_factory=adapter_factory,
        )
        self.scheduler = SyncScheduler(self.orchestrator, self.repository, self.engine_settings)
        self.started = False

    @classmethod
    def from_config_file(cls, config_path: Optional[str] = None, **kwargs) -> 'SyncEngine':
        return cls(load_config(config_path), **kwargs)

    async def start(self):
        """Start scheduled syncs."""
        await self.scheduler.start()
        self.started = True
        logger.info("Directory sync engine started")

    async def stop(self, timeout: Optional[float] = None):
        """Stop scheduling, wait for jobs, and drain pending audit forwards."""
        await self.scheduler.stop()
        await self.orchestrator.stop(timeout)
        await self.audit.close()
        self.started = False
        logger.info("Directory sync engine stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # Directory operations

    async def list_directory_servers(self) -> List[DirectoryServer]:
        return await self.repository.list_directory_servers()

    async def test_server_connection(self, server_id: str, actor: Optional[Actor] = None) -> Dict[str, Any]:
        return await self.discovery.test_connection(server_id, actor=actor, correlation_id=new_correlation_id())

    async def discover_users(self, server_id: str, search_base: Optional[str] = None,
                             additional_filter: Optional[str] = None, max_results: Optional[int] = None,
                             actor: Optional[Actor] = None) -> DiscoveryResult:
        options = DiscoveryOptions(search_base=search_base, additional_filter=additional_filter,
                                   max_results=max_results)
        return await self.discovery.discover_users(server_id, options, actor=actor,
                                                   correlation_id=new_correlation_id())

    async def discover_groups(self, server_id: str, search_base: Optional[str] = None,
                              additional_filter: Optional[str] = None, max_results: Optional[int] = None,
                              actor: Optional[Actor] = None) -> DiscoveryResult:
        options = DiscoveryOptions(search_base=search_base, additional_filter=additional_filter,
                                   max_results=max_results)
        return await self.discovery.discover_groups(server_id, options, actor=actor,
                                                    correlation_id=new_correlation_id())

    # Sync operations

    async def list_tool_configs(self) -> List[ToolSyncConfig]:
        return await self.orchestrator.list_tool_configs()

    async def preview_sync(self, config_id: str, scope='both', actor: Optional[Actor] = None) -> ChangeSet:
        return await self.orchestrator.preview_sync(config_id, scope, actor=actor)

    async def start_sync_job(self, config_id: str, scope='both', job_type='incremental',
                             is_preview: bool = False, actor: Optional[Actor] = None) -> SyncJob:
        return await self.orchestrator.start_sync_job(config_id, scope=scope, job_type=job_type,
                                                      is_preview=is_preview, actor=actor)

    async def get_sync_job(self, job_id: str) -> SyncJob:
        return await self.orchestrator.get_sync_job(job_id)

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> SyncJob:
        return await self.orchestrator.wait_for_job(job_id, timeout)

    async def get_sync_status(self) -> Dict[str, Any]:
        status = await self.orchestrator.get_sync_status_overview()
        status['scheduler'] = {
            'enabled': self.engine_settings.scheduler_enabled,
            'running': self.scheduler.running,
            'schedules': self.scheduler.get_schedule(),
        }
        return status

    async def list_audit_events(self, event_type: Optional[str] = None, category: Optional[str] = None,
                                job_id: Optional[str] = None, limit: Optional[int] = None) -> List[AuditEvent]:
        """Recorded audit events, newest first."""
        return await self.audit.list_events(event_type=event_type, category=category, job_id=job_id, limit=limit)

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the engine.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'checks': {
                'configuration': {'status': 'pass', 'message': 'Configuration loaded successfully'},
            },
        }

        server_checks = {}
        for server in await self.repository.list_directory_servers():
            result = await self.test_server_connection(server.id)
            if result['success']:
                server_checks[server.id] = {'status': 'pass', 'message': result['message']}
            else:
                server_checks[server.id] = {'status': 'fail', 'message': result['message']}
                health_status['status'] = 'unhealthy'
        health_status['checks']['directory_servers'] = server_checks

        tool_checks = {}
        for tool_config in await self.repository.list_tool_configs():
            try:
                get_adapter_class(tool_config.tool_slug)
                await self.credential_provider.get_tool_credentials(tool_config)
                adapter = self.orchestrator.adapter_factory(
                    tool_config, self.credential_provider,
                    role_mappings=await self.repository.get_role_mappings(tool_config.id),
                    settings=self.engine_settings,
                )
                tool_checks[tool_config.id] = {
                    'status': 'pass',
                    'message': f"{tool_config.tool_slug} adapter available and credentials resolved",
                    'capabilities': adapter.get_capabilities(),
                }
            except SyncEngineError as e:
                tool_checks[tool_config.id] = {'status': 'fail', 'message': e.message}
                health_status['status'] = 'unhealthy'
        health_status['checks']['tools'] = tool_checks

        if self.engine_settings.scheduler_enabled:
            health_status['checks']['scheduler'] = {
                'status': 'pass',
                'message': f"{len(self.scheduler.get_schedule())} schedule(s) active",
            }
        else:
            health_status['checks']['scheduler'] = {'status': 'skip', 'message': 'Scheduler disabled'}

        return health_status


def _print_json(payload: Any):
    print(json.dumps(payload, indent=2, default=str))


def _discovery_summary(result: DiscoveryResult) -> Dict[str, Any]:
    return {'server_id': result.server_id, 'entity_type': result.entity_type,
            'count': result.count, 'duration_ms': result.duration_ms}


async def _wait_for_shutdown_signal():
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; KeyboardInterrupt still applies
            pass
    await stop_event.wait()


async def run_command(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Execute the command selected by ``args`` and return the exit code."""
    try:
        if args.health_check:
            health_status = await engine.health_check()
            _print_json(health_status)
            return EXIT_OK if health_status['status'] == 'healthy' else EXIT_FAILURE

        if args.test_connection:
            result = await engine.test_server_connection(args.test_connection)
            _print_json(result)
            return EXIT_OK if result['success'] else EXIT_FAILURE

        if args.discover:
            users = await engine.discover_users(args.discover)
            groups = await engine.discover_groups(args.discover)
            _print_json({'users': _discovery_summary(users), 'groups': _discovery_summary(groups)})
            return EXIT_OK

        if args.preview:
            change_set = await engine.preview_sync(args.preview, args.scope)
            _print_json(change_set.to_dict())
            return EXIT_OK

        if args.sync:
            job = await engine.start_sync_job(args.sync, scope=args.scope, job_type=args.job_type,
                                              is_preview=args.dry_run)
            job = await engine.wait_for_job(job.id)
            _print_json(job.to_dict())
            return EXIT_OK if job.status.value == 'completed' and not job.errors else EXIT_FAILURE

        if args.audit:
            events = await engine.list_audit_events(job_id=args.job_id, limit=args.limit)
            _print_json([event.to_dict() for event in events])
            return EXIT_OK

        if args.daemon:
            await engine.start()
            logger.info("Running scheduler until interrupted")
            try:
                await _wait_for_shutdown_signal()
            finally:
                await engine.stop()
            return EXIT_OK

        _print_json(await engine.get_sync_status())
        return EXIT_OK

    except SyncEngineError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        _print_json({'error': e.to_dict()})
        return EXIT_FAILURE
    finally:
        if not args.daemon:
            await engine.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Directory Sync Engine')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Check directory servers and tool configuration')
    parser.add_argument('--test-connection', metavar='SERVER', help='Test connectivity to a directory server')
    parser.add_argument('--discover', metavar='SERVER', help='Discover users and groups from a directory server')
    parser.add_argument('--preview', metavar='CONFIG', help='Preview changes for a tool config without a job')
    parser.add_argument('--sync', metavar='CONFIG', help='Run a sync job for a tool config and wait for it')
    parser.add_argument('--scope', choices=['users', 'groups', 'both'], default='both',
                        help='Entity types to sync (default: both)')
    parser.add_argument('--job-type', choices=['full', 'incremental'], default='incremental',
                        help='full re-discovers the directory first (default: incremental)')
    parser.add_argument('--dry-run', action='store_true', help='Run the sync job as a preview')
    parser.add_argument('--audit', action='store_true', help='Print recorded audit events, newest first')
    parser.add_argument('--job-id', help='Only show audit events of this job (with --audit)')
    parser.add_argument('--limit', type=int, default=50, help='Maximum audit events to print (default: 50)')
    parser.add_argument('--daemon', action='store_true', help='Run scheduled syncs until interrupted')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(json.dumps({'error': {'code': e.code, 'message': str(e)}}, indent=2), file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    setup_logging(config.get('logging', {}))
    engine = SyncEngine(config)

    try:
        exit_code = asyncio.run(run_command(engine, args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        exit_code = EXIT_OK
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
