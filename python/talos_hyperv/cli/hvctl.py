"""
talos_hyperv/cli/hvctl.py

`talos-hv` entry point. Each subcommand is its own module under
talos_hyperv.cli and runs in a child interpreter, so its exit code is passed
through unchanged:

    talos-hv create --config cluster.yaml
    talos-hv scale-add --role worker
    talos-hv scale-remove talos-worker-02 --force
    talos-hv destroy
    talos-hv platform
"""

import subprocess
import sys
from typing import Dict

SUBCOMMANDS: Dict[str, str] = {
    "create": "create a 1 control plane + 1 worker cluster",
    "scale_add": "add a control-plane or worker node",
    "scale_remove": "drain and remove a node",
    "destroy": "delete every cluster VM, disk and credential",
    "platform": "install Cilium, MetalLB, ingress-nginx and monitoring",
}


def usage() -> str:
    lines = ["Usage: talos-hv <subcommand> [args...]", "", "Subcommands:"]
    lines += [
        f"  {name.replace('_', '-'):<14}{summary}" for name, summary in SUBCOMMANDS.items()
    ]
    lines.append("\nRun `talos-hv <subcommand> --help` for its options.")
    return "\n".join(lines)


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        print(usage())
        sys.exit(0 if len(sys.argv) >= 2 else 1)

    subcommand = sys.argv[1].replace("-", "_")
    if subcommand not in SUBCOMMANDS:
        print(f"ERROR: unknown subcommand '{sys.argv[1]}'\n", file=sys.stderr)
        print(usage(), file=sys.stderr)
        sys.exit(1)

    cmd = [sys.executable, "-m", f"talos_hyperv.cli.{subcommand}"] + sys.argv[2:]
    sys.exit(subprocess.call(cmd))


if __name__ == "__main__":
    main()
