import os
import socket
import time
from typing import List, Optional

try:
    import typer

    from rich.console import Console
    from rich.markup import escape
    from rich.table import Table
except ImportError:
    raise ImportError("Please install the required CLI dependencies: `pip install typer rich`")

from peerrun import globals
from peerrun.config import ENV_MAPPINGS
from peerrun.constants import LOCALHOST
from peerrun.logger import add_file_handler, get_logger, set_log_level
from peerrun.plan import (
    for_host,
    gen_peer_list,
    JobConfig,
    parse_host_spec,
    PeerID,
    Strategy,
)
from peerrun.plan.hosts import default_host_spec
from peerrun.runner import CancelToken, LocalRunner, RemoteRunner, SSHCredential
from peerrun.serving import ControlClient, serve_and_watch, Stage
from peerrun.sweep import DEFAULT_ALGOS, DEFAULT_PARTITIONS, run_all_experiments
from peerrun.utils import format_duration, is_cancellation, ParseError, PeerrunError

logger = get_logger(__name__)

app = typer.Typer(add_completion=False)
console = Console()

PASSTHROUGH_SETTINGS = {"allow_extra_args": True, "ignore_unknown_options": True, "allow_interspersed_args": False}


def infer_ip(nic: str) -> str:
    """First IPv4 address of network interface ``nic``, falling back to localhost."""
    import psutil

    for addr in psutil.net_if_addrs().get(nic, []):
        if addr.family == socket.AF_INET:
            return addr.address
    return LOCALHOST


def resolve_self_host(self_host: Optional[str], nic: Optional[str]) -> str:
    if self_host:
        return self_host
    if nic:
        return infer_ip(nic)
    return globals.config.self_host or LOCALHOST


def parse_partition(text: str) -> List[int]:
    try:
        partition = [int(p) for p in text.split(",")]
    except ValueError:
        raise ParseError("invalid partition, expected comma separated slot counts", text)
    if not partition or any(p < 1 for p in partition):
        raise ParseError("partition entries must be positive", text)
    return partition


def _fail(message: str):
    console.print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(1)


def _setup_logging(logfile: Optional[str]):
    set_log_level(globals.config.log_level)
    if logfile:
        try:
            add_file_handler(logfile)
        except OSError as e:
            _fail(f"Failed to open log file {logfile}: {e}")


@app.command("run", context_settings=PASSTHROUGH_SETTINGS)
def peerrun_run(
    ctx: typer.Context,
    prog: Optional[str] = typer.Argument(None, help="Program to launch, followed by its arguments"),
    np: int = typer.Option(os.cpu_count() or 1, "-np", "--np", help="Number of peers"),
    hosts: str = typer.Option(
        None,
        "-H",
        "--hosts",
        help="Comma separated list of <internal IP>:<nslots>[:<public addr>]",
    ),
    self_host: str = typer.Option(None, "--self", help="Internal IP of this node"),
    nic: str = typer.Option(None, "--nic", help="Network interface name, used to infer the internal IP"),
    timeout: float = typer.Option(0, "--timeout", help="Timeout in seconds, 0 for none"),
    algo: str = typer.Option(None, "--algo", help=f"Strategy, options are: {' | '.join(Strategy.names())}"),
    port: int = typer.Option(globals.config.control_port, "--port", help="Control-plane port of this node"),
    watch: bool = typer.Option(False, "-w", "--watch", help="Watch the control plane for new stages"),
    watch_period: float = typer.Option(globals.config.watch_period, "--watch-period"),
    keep: bool = typer.Option(False, "-k", "--keep", help="Don't stop watching when the run finishes"),
    checkpoint: str = typer.Option("0", "--checkpoint", help="Initial checkpoint tag in watch mode"),
    logfile: str = typer.Option(None, "--logfile", help="Path to log file"),
    verbose: bool = typer.Option(True, "-v/-q", "--verbose/--quiet", help="Show task log"),
):
    """Launch this node's share of a distributed job.

    Every node of the job runs the same command; each one starts only the peers placed on its
    own address. Everything after PROG is passed to the program unchanged.

    Examples:

    .. code-block:: bash

        $ peerrun run -np 4 -H 10.0.0.1:2,10.0.0.2:2 --self 10.0.0.1 python train.py --batch 32

        $ peerrun run -np 4 -w -k python train.py
    """
    _setup_logging(logfile)
    t0 = time.monotonic()
    prog_name = os.path.basename(prog) if prog else "peerrun"
    try:
        _run(
            prog=prog,
            args=list(ctx.args),
            np=np,
            hosts=hosts,
            self_ip=resolve_self_host(self_host, nic),
            timeout=timeout,
            algo=algo,
            port=port,
            watch=watch,
            watch_period=watch_period,
            keep=keep,
            checkpoint=checkpoint,
            verbose=verbose,
        )
    finally:
        logger.info(f"{prog_name} took {format_duration(time.monotonic() - t0)}")


def _run(prog, args, np, hosts, self_ip, timeout, algo, port, watch, watch_period, keep, checkpoint, verbose):
    logger.info(f"Using self host {self_ip}")
    if not prog:
        _fail("missing program name")

    try:
        host_list = parse_host_spec(hosts or globals.config.host_spec or default_host_spec())
    except ParseError as e:
        _fail(f"failed to parse -H: {e}")
    try:
        strategy = Strategy.parse(algo)
    except ParseError as e:
        _fail(str(e))

    job = JobConfig(parent=PeerID(host=self_ip, port=port), hosts=host_list, program=prog, args=tuple(args))
    token = CancelToken.with_timeout(timeout if timeout and timeout > 0 else None)

    if watch:
        try:
            peers = gen_peer_list(host_list, np, strategy, port_base=globals.config.peer_port_base)
        except PeerrunError as e:
            _fail(f"failed to create peers: {e}")
        try:
            err = serve_and_watch(
                self_host=self_ip,
                job=job,
                peers=peers,
                checkpoint=checkpoint,
                strategy=strategy,
                watch_period=watch_period,
                keep=keep,
                verbose=verbose,
                cancel_token=token,
            )
        except PeerrunError as e:
            _fail(f"failed to create server: {e}")
        if err is not None and not is_cancellation(err):
            _fail(str(err))
        return

    try:
        procs, _ = job.create_procs_for_count(np, strategy, port_base=globals.config.peer_port_base)
    except PeerrunError as e:
        _fail(f"failed to create tasks: {e}")

    my_procs = for_host(self_ip, procs)
    if not my_procs:
        logger.info("No task to run on this node")
        return
    logger.info(f"Will parallel run {len(my_procs)} instances of {prog} with {args}")
    t0 = time.monotonic()
    outcome = LocalRunner().run_all(my_procs, token, verbose)
    logger.info(
        f"All {len(my_procs)}/{len(procs)} local peers finished, took {format_duration(time.monotonic() - t0)}"
    )
    if outcome.error is not None and not outcome.cancelled:
        _fail(str(outcome.error))


@app.command("sweep", context_settings=PASSTHROUGH_SETTINGS)
def peerrun_sweep(
    ctx: typer.Context,
    prog: Optional[str] = typer.Argument(None, help="Benchmark program, followed by its arguments"),
    hosts: str = typer.Option(
        None,
        "-H",
        "--hosts",
        help="Comma separated list of <internal IP>:<nslots>[:<public addr>]",
    ),
    user: str = typer.Option(globals.config.ssh_user, "-u", "--user", help="User name for ssh"),
    key: str = typer.Option(globals.config.ssh_key, "--key", help="Private key file for ssh"),
    timeout: float = typer.Option(globals.config.sweep_timeout, "--timeout", help="Per-experiment timeout (s)"),
    algos: List[str] = typer.Option(None, "--algo", help="Strategy to try, repeatable"),
    partitions: List[str] = typer.Option(None, "--partition", help="Slots per host, e.g. 2,2; repeatable"),
    logfile: str = typer.Option(None, "--logfile", help="Path to log file"),
    verbose: bool = typer.Option(True, "-v/-q", "--verbose/--quiet", help="Show task log"),
):
    """Benchmark every strategy and partition on a pool of remote hosts.

    Experiments run concurrently, each one on as many hosts as its partition has entries.

    Examples:

    .. code-block:: bash

        $ peerrun sweep -H 10.0.0.1:4,10.0.0.2:4 -u ubuntu python benchmark.py

        $ peerrun sweep -H 10.0.0.1:4,10.0.0.2:4 --algo ring --partition 2,2 python benchmark.py
    """
    _setup_logging(logfile)
    if not prog:
        _fail("missing program name")
    try:
        host_list = parse_host_spec(hosts or globals.config.host_spec or "")
        strategies = [Strategy.parse(a) for a in algos] if algos else list(DEFAULT_ALGOS)
        partition_list = [parse_partition(p) for p in partitions] if partitions else list(DEFAULT_PARTITIONS)
    except ParseError as e:
        _fail(str(e))

    logger.info(f"Using hosts: {host_list.humanize()}")
    logger.info(f"Using host spec: {host_list}")

    runner = RemoteRunner(credential=SSHCredential(username=user, key_filename=key))
    report = run_all_experiments(
        host_list,
        prog,
        list(ctx.args),
        timeout if timeout and timeout > 0 else None,
        runner,
        algos=strategies,
        partitions=partition_list,
        verbose=verbose,
    )

    console.print(f"all results ({len(report.records)} records):", markup=False, highlight=False)
    for i, record in enumerate(report.records):
        console.print(f"#{i} {record}", markup=False, highlight=False)
    if not report.complete:
        console.print(
            f"[yellow]{len(report.records)} of {report.attempted} experiments produced a result[/yellow]"
        )


@app.command("push")
def peerrun_push(
    parent: str = typer.Option(..., "--parent", help="Control-plane endpoint, host:port"),
    hosts: str = typer.Option(..., "-H", "--hosts", help="Host spec of the new cluster"),
    np: int = typer.Option(..., "-np", "--np", help="Number of peers in the new cluster"),
    checkpoint: str = typer.Option(..., "--checkpoint", help="Checkpoint tag workers resume from"),
    algo: str = typer.Option(None, "--algo"),
):
    """Publish a new stage to a node running ``peerrun run -w``."""
    try:
        host_list = parse_host_spec(hosts)
        strategy = Strategy.parse(algo)
        parent_id = PeerID.parse(parent)
        peers = gen_peer_list(host_list, np, strategy, port_base=globals.config.peer_port_base)
    except PeerrunError as e:
        _fail(str(e))

    with ControlClient(parent_id) as client:
        try:
            version = client.push_stage(Stage(cluster=peers, checkpoint=checkpoint))
        except PeerrunError as e:
            _fail(f"failed to push stage to {parent_id}: {e}")
    console.print(f"[green]Published checkpoint {checkpoint} with {len(peers)} peers as version {version}[/green]")


@app.command("stage")
def peerrun_stage(
    parent: str = typer.Option(..., "--parent", help="Control-plane endpoint, host:port"),
):
    """Print the stage currently published by a node running ``peerrun run -w``."""
    try:
        parent_id = PeerID.parse(parent)
    except ParseError as e:
        _fail(str(e))

    with ControlClient(parent_id) as client:
        try:
            stage = client.get_stage()
        except PeerrunError as e:
            _fail(f"failed to fetch stage from {parent_id}: {e}")

    if stage is None:
        console.print("[yellow]No stage published yet[/yellow]")
        return

    table = Table(title=f"checkpoint {stage.checkpoint}")
    for column in ("rank", "endpoint", "local rank"):
        table.add_column(column)
    for peer in stage.cluster:
        table.add_row(str(peer.rank), str(peer.id), str(peer.local_rank))
    console.print(table)


@app.command("config")
def peerrun_config(
    key: str = typer.Argument(None, help="Config key (e.g., 'ssh_user')"),
    value: str = typer.Argument(None, help="Value to set, or 'unset' to clear it"),
):
    """Show or persist peerrun configuration.

    Examples:

    .. code-block:: bash

        $ peerrun config

        $ peerrun config ssh_user ubuntu

        $ peerrun config ssh_user unset
    """
    config = globals.config

    if key is None:
        console.print(dict(config))
        return

    if key not in ENV_MAPPINGS:
        _fail(f"Unknown config key: {key}. Valid keys are: {', '.join(sorted(ENV_MAPPINGS))}")

    if value is None:
        current = config.get(key)
        if current is None:
            console.print(f"[yellow]{key} not set[/yellow]")
        else:
            console.print(f"[blue]{current}[/blue]", highlight=False)
        return

    try:
        if value == "unset":
            config.set(key, None)
            config.write({key: None})
            console.print(f"[green]{key} unset[/green]")
        else:
            value = config.set(key, value)
            config.write({key: value})
            console.print(f"[green]{key} set to:[/green] [blue]{value}[/blue]")
    except ValueError as e:
        _fail(f"Error setting {key}: {e}")
