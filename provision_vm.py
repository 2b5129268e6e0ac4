#!/usr/bin/env python3
"""
provision_vm.py - Build a Hyper-V VM from a disk image stored in SharePoint

Downloads a split 7-Zip archive (image.7z.001, image.7z.002, ...) from a
folder of a SharePoint document library, extracts the VHDX and creates a
generation 2 VM on top of it.

The flow:
1. Check admin rights, the 7-Zip executable and the Hyper-V module
2. Sign in to SharePoint (browser or device code)
3. Pick a folder from the library; the VM is named after it
4. Download every file in the folder to the temp directory
5. Extract the archive and locate the VHDX
6. Create the VM, set its CPU count and print its properties
7. Clean up the temp directory (always)

Usage:
    provision_vm.py                          # Run with configured defaults
    provision_vm.py run --folder Win11Image  # Skip the folder picker
    provision_vm.py run --vm-name LAB-01     # Fixed VM name
    provision_vm.py config init              # Create config file
    provision_vm.py config show              # Show config (masked)
    provision_vm.py config delete vm.name    # Back to the default
"""

import argparse
import re
import shutil
import sys
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import provision_config
from archive import archive_segments, extract_disk_image, find_disk_image
from common import (
    Transcript,
    find_executable,
    format_size,
    is_admin,
    log_error,
    log_info,
    log_success,
    log_warn,
    select_item,
    speak,
)
from errors import (
    ListingError,
    PreconditionError,
    ProvisionError,
    ProvisioningError,
    SelectionError,
    TransferError,
)
from hyperv import HyperVClient, HyperVError, VmInfo, VmSpec, print_vm
from provision_config import Config, RunConfig, load_run_config
from sharepoint import RemoteFile, RemoteFolder, SharePointError, connect


VM_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9_-]")


@dataclass
class RunContext:
    """Values decided while the run progresses."""
    start_time: datetime = field(default_factory=datetime.now)
    vm_name: Optional[str] = None
    folder_name: Optional[str] = None
    downloaded: list = field(default_factory=list)
    disk_image: Optional[Path] = None
    vm_created: bool = False
    cleanup_runs: int = 0
    error: Optional[BaseException] = None


def sanitize_vm_name(name: str) -> str:
    """Keep only letters, digits, '_' and '-'."""
    return VM_NAME_DISALLOWED.sub("", name)


def resolve_vm_name(config: RunConfig, folder_name: str) -> str:
    """Fixed name from config, otherwise the sanitized folder name."""
    if config.vm_name:
        return config.vm_name

    vm_name = sanitize_vm_name(folder_name)
    if not vm_name:
        raise SelectionError(
            f"Folder name '{folder_name}' has no usable characters for a VM name"
        )
    return vm_name


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def check_preconditions(
    config: RunConfig,
    hypervisor: HyperVClient,
    admin_check: Callable[[], bool] = is_admin
) -> None:
    speak("Checking prerequisites...")
    if not admin_check():
        raise PreconditionError("This tool must be run with administrative rights")

    if find_executable(config.archiver_path) is None:
        raise PreconditionError(f"Archiver not found: {config.archiver_path}")

    if not hypervisor.is_available():
        raise PreconditionError("The Hyper-V PowerShell module is not available")

    log_success("Prerequisites met")


def choose_folder(
    store,
    config: RunConfig,
    context: RunContext,
    picker: Callable = select_item
) -> RemoteFolder:
    """List library folders, let the operator pick one and derive the VM name."""
    speak(f"Listing folders in {config.library_path}...")
    try:
        folders = store.list_folders(config.library_path)
    except SharePointError as e:
        raise ListingError(f"Could not list folders in {config.library_path}: {e.message}") from e

    if not folders:
        raise SelectionError(f"No folders found in {config.library_path}")

    if config.folder:
        folder = next((f for f in folders if f.name == config.folder), None)
        if folder is None:
            raise SelectionError(f"Folder '{config.folder}' not found in {config.library_path}")
    else:
        folder = picker(folders, "Select the image folder:", lambda f: f.name)
        if folder is None:
            raise SelectionError("No folder selected")

    context.folder_name = folder.name
    context.vm_name = resolve_vm_name(config, folder.name)
    log_info(f"Selected folder: {folder.name}")
    log_info(f"VM name: {context.vm_name}")
    return folder


def list_source_files(store, folder: RemoteFolder) -> list[RemoteFile]:
    speak(f"Listing files in {folder.name}...")
    try:
        files = store.list_files(folder.server_relative_url)
    except SharePointError as e:
        raise ListingError(f"Could not list files in {folder.name}: {e.message}") from e

    if not files:
        raise ListingError(f"No files found in folder '{folder.name}'")

    for remote in files:
        log_info(f"  {remote.name} ({format_size(remote.size)})")
    return files


def download_files(store, files: list[RemoteFile], temp_dir: Path, context: RunContext) -> None:
    """Download files one after another. The first failure aborts the run."""
    for index, remote in enumerate(files, 1):
        dest = temp_dir / Path(remote.name).name
        speak(f"Downloading {index}/{len(files)}: {remote.name}")
        try:
            written = store.download_file(remote, dest)
        except SharePointError as e:
            raise TransferError(
                f"Download of {remote.name} failed: {e.message}", file_name=remote.name
            ) from e
        context.downloaded.append(dest)
        log_success(f"Downloaded {remote.name} ({format_size(written)})")


def extract(config: RunConfig, context: RunContext) -> Path:
    disk_image = extract_disk_image(config.archiver_path, config.temp_dir)
    context.disk_image = disk_image
    log_success(f"Disk image ready: {disk_image}")
    return disk_image


def create_vm(hypervisor: HyperVClient, config: RunConfig, context: RunContext) -> VmInfo:
    """Create the VM unless one with the same name already exists."""
    name = context.vm_name
    spec = VmSpec(
        name=name,
        memory_bytes=config.memory_bytes,
        disk_path=str(context.disk_image),
        switch_name=config.switch_name,
        processor_count=config.processor_count,
    )

    try:
        if hypervisor.vm_exists(name):
            raise ProvisioningError(f"A VM named '{name}' already exists")

        speak(
            f"Creating generation {spec.generation} VM '{name}' "
            f"({config.memory_gb:g} GB, switch '{spec.switch_name}')..."
        )
        hypervisor.create_vm(spec)
        context.vm_created = True

        speak(f"Setting processor count to {spec.processor_count}...")
        hypervisor.set_processor_count(name, spec.processor_count)

        vm = hypervisor.get_vm(name)
    except HyperVError as e:
        raise ProvisioningError(f"Hyper-V error: {e.message}") from e

    if vm is None:
        raise ProvisioningError(f"VM '{name}' was created but cannot be found")

    print_vm(vm)
    return vm


def cleanup(config: RunConfig, context: RunContext, hypervisor: HyperVClient) -> None:
    """
    Remove scratch files.

    When a VHDX is present and a VM with the run's name exists, the archive
    volumes and the VHDX are deleted and the directory is kept. Otherwise the
    whole temp directory is removed.
    """
    context.cleanup_runs += 1
    temp_dir = config.temp_dir
    speak("Cleaning up...")

    if not temp_dir.exists():
        log_info(f"Temp directory {temp_dir} does not exist, nothing to clean")
        return

    disk_image = find_disk_image(temp_dir)
    vm_present = False
    if disk_image is not None and context.vm_name:
        try:
            vm_present = hypervisor.vm_exists(context.vm_name)
        except HyperVError as e:
            log_warn(f"Could not query VM '{context.vm_name}': {e.message}")

    if disk_image is not None and vm_present:
        for path in archive_segments(temp_dir) + [disk_image]:
            try:
                path.unlink()
            except OSError as e:
                log_warn(f"Could not remove {path.name}: {e}")
                continue
            log_info(f"Removed {path.name}")
        log_success("Temporary files removed")
    else:
        shutil.rmtree(temp_dir, ignore_errors=True)
        log_info(f"Removed temp directory {temp_dir}")


@contextmanager
def managed_run(config: RunConfig, context: RunContext, hypervisor: HyperVClient):
    """Own the temp directory for the duration of a run."""
    try:
        config.temp_dir.mkdir(parents=True, exist_ok=True)
        yield config.temp_dir
    finally:
        cleanup(config, context, hypervisor)


def provision_from_sharepoint(
    config: RunConfig,
    context: RunContext,
    hypervisor: HyperVClient,
    connector: Callable = connect,
    picker: Callable = select_item,
    admin_check: Callable[[], bool] = is_admin
) -> VmInfo:
    """Run every stage in order. Raises ProvisionError on the first failure."""
    check_preconditions(config, hypervisor, admin_check)

    with closing(connector(config)) as store:
        log_success("Authenticated")
        folder = choose_folder(store, config, context, picker)
        files = list_source_files(store, folder)
        download_files(store, files, config.temp_dir, context)

    extract(config, context)
    return create_vm(hypervisor, config, context)


def run(
    config: RunConfig,
    hypervisor: Optional[HyperVClient] = None,
    connector: Callable = connect,
    picker: Callable = select_item,
    admin_check: Callable[[], bool] = is_admin,
    context: Optional[RunContext] = None
) -> int:
    """Provision one VM and return the process exit status."""
    context = context or RunContext()
    hypervisor = hypervisor or HyperVClient(config.powershell)
    status = 1

    speak(f"Provisioning run started at {context.start_time:%Y-%m-%d %H:%M:%S}")
    try:
        with managed_run(config, context, hypervisor):
            provision_from_sharepoint(
                config, context, hypervisor,
                connector=connector, picker=picker, admin_check=admin_check
            )
        status = 0
    except ProvisionError as e:
        context.error = e
        log_error(f"{e.kind} error: {e.message}")
    except KeyboardInterrupt as e:
        context.error = e
        log_warn("Operation cancelled by user.")
        status = 130
    except Exception as e:
        context.error = e
        log_error(f"Unexpected error: {e}")

    elapsed = datetime.now() - context.start_time
    if status == 0:
        log_success(
            f"VM '{context.vm_name}' provisioned from folder '{context.folder_name}' in {elapsed}"
        )
    else:
        if context.vm_created:
            log_warn(f"VM '{context.vm_name}' was created and has been left in place")
        log_error(f"Provisioning failed after {elapsed}")
    return status


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def cmd_run(args: argparse.Namespace) -> int:
    """Handle run subcommand."""
    store = Config(args.config_file)
    overrides = {
        "folder": args.folder,
        "vm_name": args.vm_name,
        "auth_method": args.auth,
        "memory_gb": args.memory_gb,
        "processor_count": args.cpus,
        "switch_name": args.switch,
        "temp_dir": args.temp_dir,
        "archiver_path": args.archiver,
    }

    try:
        config = load_run_config(store, overrides)
    except PreconditionError as e:
        log_error(e.message)
        return 1

    with Transcript(config.transcript_dir):
        return run(config)


def cmd_config(args: argparse.Namespace) -> int:
    """Handle config subcommand."""
    handlers = {
        "init": provision_config.cmd_init,
        "show": provision_config.cmd_show,
        "get": provision_config.cmd_get,
        "set": provision_config.cmd_set,
        "delete": provision_config.cmd_delete,
    }
    handler = handlers.get(args.config_command)
    if handler is None:
        log_error("Missing config command (init, show, get, set, delete)")
        return 1

    try:
        return handler(args)
    except (ValueError, ProvisionError) as e:
        log_error(str(e))
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vmprov",
        description="Create a Hyper-V VM from a split VHDX archive stored in SharePoint",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                   # Pick a folder and build the VM
  %(prog)s run --folder Win11Image           # Build from a known folder
  %(prog)s run --vm-name LAB-01 --cpus 2     # Fixed VM name, 2 CPUs
  %(prog)s run --auth device                 # Device code sign-in
  %(prog)s config set sharepoint.site_url https://contoso.sharepoint.com/sites/IT

Environment Variables:
  VMPROV_<SECTION>_<KEY>   Overrides config file values (e.g. VMPROV_VM_MEMORY_GB)
"""
    )

    parser.add_argument(
        "--config-file", "-c",
        type=Path,
        default=provision_config.CONFIG_FILE,
        help=f"Path to config file (default: {provision_config.CONFIG_FILE})"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run
    run_parser = subparsers.add_parser("run", help="Provision a VM (default)")
    run_parser.add_argument("--folder", "-f", help="Library folder to use instead of the picker")
    run_parser.add_argument("--vm-name", "-n", help="Fixed VM name (default: sanitized folder name)")
    run_parser.add_argument(
        "--auth", "-a",
        choices=provision_config.AUTH_METHODS,
        help="Sign-in method (default: from config)"
    )
    run_parser.add_argument("--memory-gb", "-m", type=float, help="Startup memory in GB")
    run_parser.add_argument("--cpus", type=int, help="Virtual processor count")
    run_parser.add_argument("--switch", "-s", help="Virtual switch name")
    run_parser.add_argument("--temp-dir", type=Path, help="Scratch directory for downloads")
    run_parser.add_argument("--archiver", help="Path to 7z executable")
    run_parser.set_defaults(func=cmd_run)

    # config
    config_parser = subparsers.add_parser("config", help="Manage configuration")
    config_sub = config_parser.add_subparsers(dest="config_command")

    config_init = config_sub.add_parser("init", help="Create config file")
    config_init.add_argument("--force", action="store_true", help="Overwrite existing")
    config_show = config_sub.add_parser("show", help="Show current config")
    config_show.add_argument("--show-secrets", action="store_true", help="Show sensitive values")
    config_get = config_sub.add_parser("get", help="Get config value")
    config_get.add_argument("key", help="Key in format section.key")
    config_set = config_sub.add_parser("set", help="Set config value")
    config_set.add_argument("key", help="Key in format section.key")
    config_set.add_argument("value", help="Value to set")
    config_delete = config_sub.add_parser("delete", help="Delete config key or section")
    config_delete.add_argument("key", help="Key in format section.key, or a section name")
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)

    args = parser.parse_args(argv)
    if not args.command:
        args = parser.parse_args(argv + ["run"])

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
