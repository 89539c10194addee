import json
import shutil
from pathlib import Path

import click

from betblocker.config import LOG_FILE, Config, config_path, load_config, save_config
from betblocker.denylist import DenylistClient
from betblocker.errors import BetBlockerError
from betblocker.logging_config import setup_logging
from betblocker.mobileconfig import ProfileBuilder, profile_filename
from betblocker.provisioner import ProfileProvisioner
from betblocker.signing import ProfileSigner, read_pem
from betblocker.webapp import make_server


@click.group()
@click.version_option(package_name="betblocker")
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.pass_context
def main(ctx, json_mode):
    """BetBlocker - manage a NextDNS gambling blocklist and Apple DNS profiles."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_mode


def _emit(ctx, data, human_lines):
    """Output JSON or human-readable text based on mode."""
    if ctx.obj.get("json"):
        click.echo(json.dumps(data))
    else:
        for line in human_lines:
            click.echo(line)


def _fail(ctx, message: str) -> None:
    """Emit a JSON-aware error and exit with status 1."""
    if ctx.obj.get("json"):
        click.echo(json.dumps({"status": "error", "message": message}))
    else:
        click.echo(f"Error: {message}", err=True)
    ctx.exit(1)


def _resolve_profile_id(ctx, config: Config, profile_id: str | None) -> str:
    resolved = profile_id or config.profile_id
    if not resolved:
        _fail(ctx, "No profile id. Pass --profile-id or set NEXTDNS_PROFILE_ID.")
    return resolved


profile_id_option = click.option(
    "--profile-id", default=None, help="NextDNS profile id (defaults to NEXTDNS_PROFILE_ID)"
)


@main.command()
@click.option("--host", default=None, help="Address to bind (default from config)")
@click.option("--port", type=int, default=None, help="Port to bind (default from config)")
@click.option("--quiet", "-q", is_flag=True, help="Log to the log file only")
def serve(host, port, quiet):
    """Run the BetBlocker web app."""
    config = load_config()
    setup_logging(
        LOG_FILE,
        level=config.log_level,
        foreground=not quiet,
        max_bytes=config.log_max_size_mb * 1024 * 1024,
    )
    server = make_server(config, host=host, port=port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


@main.command("create-profile")
@click.option("--label", default=None, help="Name for the new NextDNS profile")
@click.pass_context
def create_profile(ctx, label):
    """Create a new NextDNS filtering profile."""
    config = load_config()
    try:
        profile = ProfileProvisioner(config).create(label)
    except BetBlockerError as e:
        _fail(ctx, e.message)
        return
    _emit(ctx,
        {"status": "ok", **profile.to_dict()},
        [f"Created profile {profile.id} ({profile.name}).",
         f"DNS-over-HTTPS: https://{config.dns_host}/{profile.id}"])


@main.command("list")
@profile_id_option
@click.pass_context
def list_domains(ctx, profile_id):
    """Show the domains on a profile's denylist."""
    config = load_config()
    profile_id = _resolve_profile_id(ctx, config, profile_id)
    try:
        entries = DenylistClient(config).list(profile_id)
    except BetBlockerError as e:
        _fail(ctx, e.message)
        return
    human_lines = [f"{len(entries)} blocked domain(s) on {profile_id}:"]
    for entry in entries:
        marker = "" if entry.active else "  (inactive)"
        human_lines.append(f"  {entry.host}{marker}")
    _emit(ctx,
        {"status": "ok", "profileId": profile_id, "denylist": [e.to_dict() for e in entries]},
        human_lines)


@main.command()
@click.argument("domain")
@profile_id_option
@click.pass_context
def block(ctx, domain, profile_id):
    """Add a domain to the denylist."""
    config = load_config()
    profile_id = _resolve_profile_id(ctx, config, profile_id)
    try:
        message = DenylistClient(config).add(profile_id, domain)
    except BetBlockerError as e:
        _fail(ctx, e.message)
        return
    _emit(ctx, {"status": "ok", "message": message}, [message])


@main.command()
@click.argument("domain")
@profile_id_option
@click.pass_context
def unblock(ctx, domain, profile_id):
    """Remove a domain from the denylist."""
    config = load_config()
    profile_id = _resolve_profile_id(ctx, config, profile_id)
    try:
        message = DenylistClient(config).remove(profile_id, domain)
    except BetBlockerError as e:
        _fail(ctx, e.message)
        return
    _emit(ctx, {"status": "ok", "message": message}, [message])


@main.command()
@profile_id_option
@click.option("--password", default=None, help="Removal password to embed (defaults to REMOVAL_PASSWORD)")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Output file (default betblocker-<id>.mobileconfig)")
@click.pass_context
def mobileconfig(ctx, profile_id, password, output):
    """Write an Apple configuration profile, signed when possible."""
    config = load_config()
    profile_id = _resolve_profile_id(ctx, config, profile_id)
    try:
        document = ProfileBuilder(config).build(profile_id, password or config.removal_password or None)
    except BetBlockerError as e:
        _fail(ctx, e.message)
        return
    result = ProfileSigner(config).sign(document.encode("utf-8"))
    output = output or Path(profile_filename(profile_id))
    output.write_bytes(result.content)
    _emit(ctx,
        {"status": "ok", "path": str(output), "signed": result.signed},
        [f"Wrote {'signed' if result.signed else 'unsigned'} profile to {output}"])


@main.command("init-config")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
@click.pass_context
def init_config(ctx, force):
    """Write a default config file."""
    path = config_path()
    if path.exists() and not force:
        _fail(ctx, f"{path} already exists (use --force to overwrite)")
        return
    save_config(Config(), path)
    _emit(ctx,
        {"status": "ok", "path": str(path)},
        [f"Wrote default config to {path}",
         "Set NEXTDNS_API_KEY in the environment or in the [nextdns] section."])


@main.command()
@click.pass_context
def doctor(ctx):
    """Check configuration and signing prerequisites."""
    json_mode = ctx.obj.get("json")
    checks = []
    issues = []
    config = load_config()

    # 1. API key
    if config.api_key:
        checks.append({"name": "api_key", "status": "ok", "message": "NextDNS API key is configured"})
    else:
        checks.append({"name": "api_key", "status": "fail", "message": "NextDNS API key is not configured"})
        issues.append("Set NEXTDNS_API_KEY or [nextdns] api_key in the config file")

    # 2. Default profile
    if config.profile_id:
        checks.append({"name": "profile_id", "status": "ok",
                       "message": f"Default profile: {config.profile_id}"})
    else:
        checks.append({"name": "profile_id", "status": "info",
                       "message": "No default profile id (clients must pass profileId)"})

    # 3. Signing material
    if not config.signing_configured:
        checks.append({"name": "signing", "status": "info",
                       "message": "Signing not configured; profiles are served unsigned"})
    else:
        material = [("certificate", config.signing_cert), ("key", config.signing_key)]
        if config.signing_chain:
            material.append(("chain", config.signing_chain))
        for label, path in material:
            if read_pem(Path(path).expanduser(), label) is not None:
                checks.append({"name": f"signing_{label}", "status": "ok",
                               "message": f"Signing {label} readable: {path}"})
            else:
                checks.append({"name": f"signing_{label}", "status": "fail",
                               "message": f"Signing {label} missing or not PEM: {path}"})
                issues.append(f"Fix the signing {label} path; profiles will be unsigned until then")

        # 4. openssl binary
        openssl = shutil.which(config.openssl_bin)
        if openssl:
            checks.append({"name": "openssl", "status": "ok", "message": f"openssl found: {openssl}"})
        else:
            checks.append({"name": "openssl", "status": "fail",
                           "message": f"openssl not found: {config.openssl_bin}"})
            issues.append("Install openssl or set [signing] openssl to its path")

    # Output
    if json_mode:
        overall = "ok" if not issues else "error"
        click.echo(json.dumps({"status": overall, "checks": checks, "issues": issues}))
    else:
        _STATUS_COLORS = {"ok": "green", "fail": "red", "warn": "yellow", "info": "blue"}
        _STATUS_LABELS = {"ok": "OK", "fail": "FAIL", "warn": "WARN", "info": "INFO"}
        for check in checks:
            color = _STATUS_COLORS.get(check["status"], "white")
            label = _STATUS_LABELS.get(check["status"], check["status"].upper())
            click.echo(click.style(f"[{label}]", fg=color) + f"  {check['message']}")

        click.echo()
        if not issues:
            click.echo(click.style("All checks passed. BetBlocker is ready.", fg="green"))
        else:
            click.echo(click.style(f"{len(issues)} issue(s) found:", fg="red"))
            for issue in issues:
                click.echo(f"  - {issue}")
