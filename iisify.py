#!/usr/bin/env python3
"""iisify — bring a Windows Server host to a declared IIS state.

Enables the IIS role features, installs the URL Rewrite module, adds a
machine-wide HTTP→HTTPS redirect rule and provisions the declared websites
with their HTTP/HTTPS bindings.  Every step checks before it changes
anything, so re-running against a provisioned host is a no-op.
"""

import argparse
import json
import os
import platform
import re
import subprocess
import sys
import tempfile
import time
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

# ── Constants ────────────────────────────────────────────────────────────────

STAMP_PATH = (Path(os.environ.get("ProgramData", r"C:\ProgramData"))
              / "iisify" / "iisify.stamp")

STEPS = ["features", "module", "redirect", "sites"]

FEATURES = [
    "IIS-WebServerRole",
    "IIS-WebServer",
    "IIS-CommonHttpFeatures",
    "IIS-StaticContent",
    "IIS-DefaultDocument",
    "IIS-HttpErrors",
    "IIS-HttpRedirect",
    "IIS-HttpLogging",
    "IIS-RequestFiltering",
    "IIS-HttpCompressionStatic",
    "IIS-ApplicationDevelopment",
    "IIS-NetFxExtensibility45",
    "IIS-ASPNET45",
    "IIS-ISAPIExtensions",
    "IIS-ISAPIFilter",
    "IIS-WebServerManagementTools",
    "IIS-ManagementConsole",
]

# dism.exe states that need no enable call
ENABLED_STATES = ("Enabled", "Enable Pending")

# dism.exe exit code → feature status
DISM_EXIT_CODES = {
    0: "enabled",
    3010: "enabled",            # ERROR_SUCCESS_REBOOT_REQUIRED
    0x800F080C: "unsupported",  # CBS_E_UNKNOWN_UPDATE: feature name unknown
}

# Text fallback for exit codes the table above does not know.
DISM_TEXT_SIGNALS = (
    ("is unknown", "unsupported"),
    ("The operation completed successfully", "enabled"),
)

MSIEXEC_SUCCESS = (0, 3010)

APPHOST = "MACHINE/WEBROOT/APPHOST"
GLOBAL_RULES = "system.webServer/rewrite/globalRules"

CERT_STORE = r"Cert:\LocalMachine\My"
CERT_POLICIES = ("first", "match")


@dataclass(frozen=True)
class ModuleSpec:
    name: str
    binary: str
    url: str
    staging: str


@dataclass(frozen=True)
class RedirectRule:
    name: str
    match_url: str = "(.*)"
    condition_input: str = "{HTTPS}"
    condition_pattern: str = "^OFF$"
    redirect_url: str = "https://{HTTP_HOST}{REQUEST_URI}"
    redirect_type: str = "Permanent"


@dataclass(frozen=True)
class SiteDefinition:
    name: str
    path: str
    domain: str


URL_REWRITE = ModuleSpec(
    name="URL Rewrite 2.1",
    binary=r"C:\Windows\System32\inetsrv\rewrite.dll",
    url=("https://download.microsoft.com/download/1/2/8/"
         "128E2E22-C1B9-44A4-BE2A-5859ED1D4592/rewrite_amd64_en-US.msi"),
    staging=str(Path(tempfile.gettempdir()) / "rewrite_amd64_en-US.msi"),
)

REDIRECT_RULE = RedirectRule(name="Global HTTP to HTTPS")

SITES = [
    SiteDefinition("MainSite", r"C:\inetpub\mainsite", "www.example.com"),
    SiteDefinition("ApiSite", r"C:\inetpub\apisite", "api.example.com"),
]


class FeatureStatus:
    ALREADY_ENABLED = "already-enabled"
    ENABLED = "enabled"
    UNSUPPORTED = "unsupported"
    FAILED = "failed"

    ALL = (ALREADY_ENABLED, ENABLED, UNSUPPORTED, FAILED)


class ModuleStatus:
    ALREADY_INSTALLED = "already-installed"
    INSTALLED = "installed"
    DOWNLOAD_FAILED = "download-failed"
    INSTALL_ATTEMPTED = "install-attempted"
    INSTALL_FAILED = "install-failed"


class RuleStatus:
    ALREADY_EXISTS = "already-exists"
    CREATED = "created"


class SiteStatus:
    CREATED = "created"
    ALREADY_EXISTS = "already-exists"


class BindingStatus:
    CONFIGURED = "configured"
    SKIPPED_EXISTING = "skipped-existing"
    NO_CERTIFICATE = "no-certificate"
    NO_MATCHING_CERTIFICATE = "no-matching-certificate"


class IisifyError(Exception):
    """An IIS query or change failed; the current step is abandoned."""


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    TOGGLE   = "\uf205"   # toggle-on
    PUZZLE   = "\uf12e"   # puzzle-piece
    DOWNLOAD = "\uf019"   # download
    EXCHANGE = "\uf0ec"   # exchange (redirect)
    GLOBE    = "\uf0ac"   # globe
    FOLDER   = "\uf07b"   # folder
    LINK     = "\uf0c1"   # link (binding)
    LOCK     = "\uf023"   # lock (certificate)
    TABLE    = "\uf0ce"   # table
    STAMP    = "\uf249"   # id-badge

STEP_ICONS = {
    "features": _I.TOGGLE,
    "module":   _I.PUZZLE,
    "redirect": _I.EXCHANGE,
    "sites":    _I.GLOBE,
}

STEP_LABELS = {
    "features": "Windows Features",
    "module":   "URL Rewrite Module",
    "redirect": "Global HTTPS Redirect",
    "sites":    "Websites",
}


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {icon}  {title}  {tag}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


# ── Host detection ───────────────────────────────────────────────────────────

def detect_os() -> tuple:
    """Return (system, version) of the running host."""
    system = platform.system() or "unknown"
    version = platform.version() or "0"
    if system != "Windows":
        _warn(f"Detected {system} {version} — iisify targets Windows Server")
    return system, version


def is_admin() -> bool:
    """True when running elevated on Windows."""
    if sys.platform != "win32":
        return False
    import ctypes
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except OSError:
        return False


# ── Pure helpers ─────────────────────────────────────────────────────────────

def classify_dism_result(returncode: int, output: str) -> str:
    """Map a dism.exe enable-feature result onto a FeatureStatus value.

    The exit code is authoritative; the text table only covers codes that
    are not in DISM_EXIT_CODES.
    """
    code = returncode & 0xFFFFFFFF
    if code in DISM_EXIT_CODES:
        return DISM_EXIT_CODES[code]
    for signal, status in DISM_TEXT_SIGNALS:
        if signal in (output or ""):
            return status
    return FeatureStatus.FAILED


def parse_binding_info(protocol: str, info: str) -> dict:
    """Split an IIS bindingInformation string (ip:port:host).

    Split from the right: the host header never holds a colon, an IPv6
    address (`[::]`) does.
    """
    rest, _, host = info.rpartition(":")
    ip, _, port = rest.rpartition(":")
    ip, port, host = ip.strip(), port.strip(), host.strip()
    try:
        port = int(port)
    except ValueError:
        pass
    return {"protocol": protocol.lower(), "ip": ip, "port": port, "host": host}


def format_binding(binding: dict) -> str:
    return (f"{binding['protocol']}/{binding['ip']}:{binding['port']}:"
            f"{binding['host']}")


def host_matches(pattern: str, host: str) -> bool:
    """Match a certificate name against a host; ``*.`` covers one label."""
    pattern = pattern.lower().rstrip(".")
    host = host.lower().rstrip(".")
    if pattern.startswith("*."):
        _, _, parent = host.partition(".")
        return bool(parent) and parent == pattern[2:]
    return pattern == host


def certificate_names(cert: dict) -> list:
    names = list(cert.get("dnsnames") or [])
    m = re.search(r"CN=([^,]+)", cert.get("subject") or "")
    if m and m.group(1).strip() not in names:
        names.append(m.group(1).strip())
    return names


def _ps_quote(value) -> str:
    """Single-quote *value* for PowerShell."""
    return "'" + str(value).replace("'", "''") + "'"


# ── StampFile ────────────────────────────────────────────────────────────────

class StampFile:
    """JSON ledger of every change a run made to the host."""

    def __init__(self, path=None):
        self.path = path or STAMP_PATH
        self.data: dict = {}

    def load(self) -> dict:
        if self.path.exists():
            with open(self.path) as fh:
                self.data = json.load(fh)
        return self.data

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as fh:
            json.dump(self.data, fh, indent=2)
            fh.write("\n")
        os.replace(tmp, self.path)

    def start(self, host: str) -> None:
        self.data = {
            "started": datetime.now(timezone.utc).isoformat(),
            "finished": None,
            "host": host,
            "features_enabled": [],
            "features_unsupported": [],
            "features_failed": [],
            "module": None,
            "rules_created": [],
            "dirs_created": [],
            "sites_created": [],
            "bindings_added": [],
            "cert_bindings": [],
            "errors": [],
        }
        self.save()

    def finish(self) -> None:
        self.data["finished"] = datetime.now(timezone.utc).isoformat()
        self.save()

    def record(self, key: str, value) -> None:
        """Append *value* to a list key, or set a scalar key.

        Mutates in-memory only.  Call ``save()`` at step boundaries.
        """
        if isinstance(self.data.get(key), list):
            if value not in self.data[key]:
                self.data[key].append(value)
        else:
            self.data[key] = value

    def mutations(self) -> int:
        """Number of recorded changes, excluding classifications and errors."""
        keys = ("features_enabled", "rules_created", "dirs_created",
                "sites_created", "bindings_added", "cert_bindings")
        count = sum(len(self.data.get(k) or []) for k in keys)
        if self.data.get("module") in (ModuleStatus.INSTALLED,
                                       ModuleStatus.INSTALL_ATTEMPTED,
                                       ModuleStatus.INSTALL_FAILED):
            count += 1
        return count


# ── Iisify ───────────────────────────────────────────────────────────────────

class Iisify:

    def __init__(self, dry_run: bool, skip_steps: list,
                 quiet: bool = False, cert_policy: str = "first",
                 reconcile: bool = False):
        if cert_policy not in CERT_POLICIES:
            raise ValueError(f"Unknown certificate policy: {cert_policy}")
        self.dry_run = dry_run
        self.skip = set(skip_steps)
        self.quiet = quiet
        self.cert_policy = cert_policy
        self.reconcile = reconcile
        self.features = list(FEATURES)
        self.module = URL_REWRITE
        self.rule = REDIRECT_RULE
        self.sites = list(SITES)
        self.stamp = StampFile()
        self.os_name, self.os_version = detect_os()
        self.results: dict = {"features": {}, "module": None,
                              "redirect": None, "sites": {}}
        self._t0 = None
        self._step = 0
        self._total = sum(1 for s in STEPS if s not in self.skip)

    # ── helpers ───────────────────────────────────────────────────────────

    def _exec(self, cmd, capture=True):
        try:
            return subprocess.run(cmd, capture_output=capture, text=capture)
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(cmd, 127, "", str(exc))

    def run_cmd(self, cmd, check=True, capture=False):
        """Execute a mutating *cmd*, or print it if --dry-run.

        With --quiet the "Running:" echo is suppressed; warnings and errors
        still print.  [DRY RUN] lines are never suppressed.
        """
        pretty = " ".join(str(c) for c in cmd)
        if self.dry_run:
            _dry(pretty)
            return None
        if not self.quiet:
            _info(f"Running: {pretty}")
        result = self._exec(cmd, capture=capture)
        if result.returncode != 0:
            if check:
                raise IisifyError(f"exited {result.returncode}: {pretty}")
            _warn(f"  ↳ exited {result.returncode}: {pretty}")
        return result

    def _query(self, cmd):
        """Read-only command; runs even under --dry-run."""
        return self._exec(cmd, capture=True)

    def _record(self, key: str, value) -> None:
        if not self.dry_run:
            self.stamp.record(key, value)

    @staticmethod
    def _powershell(script: str, web_admin: bool = True) -> list:
        if web_admin:
            script = f"Import-Module WebAdministration; {script}"
        # Any failing statement ends the chain with a non-zero exit.
        script = f"$ErrorActionPreference = 'Stop'; {script}"
        return ["powershell.exe", "-NoProfile", "-NonInteractive",
                "-ExecutionPolicy", "Bypass", "-Command", script]

    def _ps_json(self, script: str, web_admin: bool = True):
        """Run a PowerShell query and decode its output as a JSON list."""
        wrapped = f"ConvertTo-Json -Compress -Depth 4 -InputObject @({script})"
        result = self._query(self._powershell(wrapped, web_admin=web_admin))
        if result.returncode != 0:
            raise IisifyError(
                f"PowerShell query failed ({result.returncode}): "
                f"{(result.stderr or '').strip() or script}")
        try:
            return json.loads(result.stdout or "[]")
        except ValueError:
            raise IisifyError("Unable to parse PowerShell output as JSON")

    def _srvmgr(self, script: str, what: str) -> None:
        """Run a mutating WebAdministration command."""
        result = self.run_cmd(self._powershell(script), check=False,
                              capture=True)
        if result is not None and result.returncode != 0:
            raise IisifyError(f"{what}: {(result.stderr or '').strip()}")

    def _ensure_dir(self, path: Path) -> None:
        """Create directory (and track it) when needed."""
        if path.exists():
            return
        if self.dry_run:
            _dry(f"mkdir {path}")
            return
        path.mkdir(parents=True, exist_ok=True)
        self._record("dirs_created", str(path))
        _info(f"{_I.FOLDER}  Created dir {path}")

    def _next_step(self, step: str) -> None:
        """Print a step banner with icon and step counter."""
        self._step += 1
        _section(STEP_ICONS[step], STEP_LABELS[step], self._step, self._total)

    def _run_step(self, step: str, func):
        """Run one provisioning step; IisifyError ends the step, not the run."""
        if step in self.skip:
            _skip(f"Skipping {STEP_LABELS[step]} (--skip-{step})")
            return None
        self._next_step(step)
        try:
            return func()
        except IisifyError as exc:
            _error(f"{STEP_LABELS[step]} failed: {exc}")
            self._record("errors", f"{step}: {exc}")
            return None
        finally:
            if not self.dry_run:
                self.stamp.save()

    # ── entry point ───────────────────────────────────────────────────────

    def run(self) -> None:
        self._t0 = time.monotonic()
        host = platform.node() or "localhost"

        _banner(f"{_I.ROCKET}  iisify — provisioning IIS on {host} "
                f"({self.os_name} {self.os_version})")

        if not self.dry_run:
            self.stamp.start(host)

        self.results["features"] = (
            self._run_step("features", self.ensure_features) or {})

        # Everything past this point needs the IIS configuration store.
        needs_iis = bool({"redirect", "sites"} - self.skip)
        if needs_iis and not self.web_admin_available():
            _error("WebAdministration PowerShell module could not be loaded "
                   "— is the IIS role installed?")
            if not self.dry_run:
                self.stamp.record("errors", "WebAdministration unavailable")
                self.stamp.finish()
            sys.exit(1)

        self.results["module"] = self._run_step("module", self.ensure_module)
        self.results["redirect"] = self._run_step(
            "redirect", lambda: self.ensure_global_redirect(self.rule))
        self._run_step("sites", self.ensure_sites)

        if not self.dry_run:
            self.stamp.finish()

        self._print_summary()

    def web_admin_available(self) -> bool:
        r = self._query(self._powershell(
            "Import-Module WebAdministration -ErrorAction Stop",
            web_admin=False))
        return r.returncode == 0

    # ── Windows features ──────────────────────────────────────────────────

    def _feature_state(self, feature: str):
        """Return (state, result) of the dism query for *feature*.

        *state* is None when the output carries no State line.
        """
        r = self._query(["dism.exe", "/online", "/English",
                         "/get-featureinfo", f"/featurename:{feature}"])
        m = re.search(r"^State\s*:\s*(.+?)\s*$", r.stdout or "", re.MULTILINE)
        return (m.group(1) if m else None), r

    def _enable_feature(self, feature: str):
        return self.run_cmd(
            ["dism.exe", "/online", "/English", "/enable-feature",
             f"/featurename:{feature}", "/all", "/norestart"],
            check=False, capture=True,
        )

    def ensure_feature(self, feature: str) -> str:
        state, query = self._feature_state(feature)
        if state in ENABLED_STATES:
            _info(f"Feature already enabled: {feature}")
            return FeatureStatus.ALREADY_ENABLED

        if state is None and query is not None and classify_dism_result(
                query.returncode,
                f"{query.stdout or ''}\n{query.stderr or ''}",
        ) == FeatureStatus.UNSUPPORTED:
            _skip(f"Feature not available on this OS: {feature}")
            self._record("features_unsupported", feature)
            return FeatureStatus.UNSUPPORTED

        result = self._enable_feature(feature)
        if result is None:
            return FeatureStatus.ENABLED

        status = classify_dism_result(
            result.returncode, f"{result.stdout or ''}\n{result.stderr or ''}")
        if status == FeatureStatus.ENABLED:
            _info(f"{_I.TOGGLE}  Enabled feature {feature}")
            self._record("features_enabled", feature)
        elif status == FeatureStatus.UNSUPPORTED:
            _skip(f"Feature not available on this OS: {feature}")
            self._record("features_unsupported", feature)
        else:
            _warn(f"Failed to enable {feature} (exit {result.returncode})")
            self._record("features_failed", feature)
        return status

    def ensure_features(self) -> dict:
        return {feature: self.ensure_feature(feature)
                for feature in self.features}

    # ── URL Rewrite module ────────────────────────────────────────────────

    def _fetch(self, url: str, dest: str) -> bool:
        if self.dry_run:
            _dry(f"download {url} → {dest}")
            return True
        _info(f"{_I.DOWNLOAD}  Downloading {url}")
        try:
            urllib.request.urlretrieve(url, dest)
        except OSError as exc:
            _warn(f"Download failed: {exc}")
            return False
        return True

    def _install_package(self, package: str):
        """Run msiexec synchronously; return its exit code (None on dry run)."""
        r = self.run_cmd(["msiexec.exe", "/i", package, "/quiet", "/norestart"],
                         check=False)
        return None if r is None else r.returncode

    def ensure_module(self) -> str:
        module = self.module
        if Path(module.binary).exists():
            _info(f"{module.name} already installed ({module.binary})")
            return ModuleStatus.ALREADY_INSTALLED

        if not self._fetch(module.url, module.staging):
            self._record("module", ModuleStatus.DOWNLOAD_FAILED)
            return ModuleStatus.DOWNLOAD_FAILED

        try:
            code = self._install_package(module.staging)
        finally:
            if not self.dry_run:
                Path(module.staging).unlink(missing_ok=True)

        if code is not None and code not in MSIEXEC_SUCCESS:
            _warn(f"{module.name} installer failed (exit {code})")
            status = ModuleStatus.INSTALL_FAILED
        elif code is not None and Path(module.binary).exists():
            _info(f"{_I.PUZZLE}  Installed {module.name}")
            status = ModuleStatus.INSTALLED
        else:
            if code is not None:
                _warn(f"{module.name} installer finished but "
                      f"{module.binary} is missing")
            status = ModuleStatus.INSTALL_ATTEMPTED
        self._record("module", status)
        return status

    # ── Global redirect rule ──────────────────────────────────────────────

    def _global_rule_names(self) -> list:
        return self._ps_json(
            f"Get-WebConfiguration -PSPath {_ps_quote(APPHOST)} "
            f"-Filter {_ps_quote(GLOBAL_RULES + '/rule')} "
            f"| Select-Object -ExpandProperty name")

    def _add_global_redirect(self, rule: RedirectRule) -> None:
        scope = f"-PSPath {_ps_quote(APPHOST)}"
        node = f"{GLOBAL_RULES}/rule[@name='{rule.name}']"
        script = "; ".join([
            f"Add-WebConfigurationProperty {scope} "
            f"-Filter {_ps_quote(GLOBAL_RULES)} -Name '.' "
            f"-Value @{{name={_ps_quote(rule.name)};stopProcessing='True'}}",
            f"Set-WebConfigurationProperty {scope} "
            f"-Filter {_ps_quote(node + '/match')} -Name url "
            f"-Value {_ps_quote(rule.match_url)}",
            f"Add-WebConfigurationProperty {scope} "
            f"-Filter {_ps_quote(node + '/conditions')} -Name '.' "
            f"-Value @{{input={_ps_quote(rule.condition_input)};"
            f"pattern={_ps_quote(rule.condition_pattern)}}}",
            f"Set-WebConfigurationProperty {scope} "
            f"-Filter {_ps_quote(node + '/action')} -Name type -Value 'Redirect'",
            f"Set-WebConfigurationProperty {scope} "
            f"-Filter {_ps_quote(node + '/action')} -Name url "
            f"-Value {_ps_quote(rule.redirect_url)}",
            f"Set-WebConfigurationProperty {scope} "
            f"-Filter {_ps_quote(node + '/action')} -Name redirectType "
            f"-Value {_ps_quote(rule.redirect_type)}",
            f"Set-WebConfigurationProperty {scope} "
            f"-Filter {_ps_quote(node + '/action')} -Name appendQueryString "
            f"-Value 'False'",
        ])
        self._srvmgr(script, f"Unable to create rule {rule.name}")

    def ensure_global_redirect(self, rule: RedirectRule) -> str:
        if rule.name in self._global_rule_names():
            _info(f"Global rule already present: {rule.name}")
            return RuleStatus.ALREADY_EXISTS
        self._add_global_redirect(rule)
        _info(f"{_I.EXCHANGE}  Created global rule '{rule.name}' "
              f"→ {rule.redirect_url}")
        self._record("rules_created", rule.name)
        return RuleStatus.CREATED

    # ── Websites ──────────────────────────────────────────────────────────

    def _list_sites(self) -> dict:
        """Return {name: {state, path, bindings}} for every IIS website."""
        items = self._ps_json(
            r"Get-ChildItem -Path 'IIS:\Sites' "
            "| Select-Object Name, State, PhysicalPath, Bindings")
        sites = {}
        for item in items:
            item = {k.lower(): v for k, v in item.items()}
            collection = (item.get("bindings") or {}).get("Collection") or []
            bindings = [
                parse_binding_info(b["protocol"], b["bindingInformation"])
                for b in collection
                if str(b.get("protocol", "")).lower() in ("http", "https")
            ]
            sites[item["name"]] = {
                "state": item.get("state"),
                "path": item.get("physicalpath"),
                "bindings": bindings,
            }
        return sites

    def _create_site(self, site: SiteDefinition) -> None:
        binding = f"*:80:{site.domain}"
        site_path = _ps_quote(r"IIS:\Sites" + "\\" + site.name)
        script = (
            f"New-Item -Path {site_path} "
            f"-PhysicalPath {_ps_quote(site.path)} "
            f"-Bindings @{{protocol='http';bindingInformation={_ps_quote(binding)}}}"
        )
        self._srvmgr(script, f"Unable to create site {site.name}")

    def _add_binding(self, site_name: str, protocol: str, port: int,
                     host: str) -> None:
        script = (
            f"New-WebBinding -Name {_ps_quote(site_name)} "
            f"-Protocol {_ps_quote(protocol)} -IPAddress '*' -Port {port} "
            f"-HostHeader {_ps_quote(host)}"
        )
        if protocol == "https":
            script += " -SslFlags 1"
        self._srvmgr(script, f"Unable to add {protocol} binding to {site_name}")

    def _list_certs(self) -> list:
        items = self._ps_json(
            f"Get-ChildItem -Path {_ps_quote(CERT_STORE)} "
            "| Select-Object Thumbprint, Subject, DnsNameList, "
            "@{Name='NotAfter';Expression={$_.NotAfter.ToUniversalTime()"
            ".ToString('s')}}",
            web_admin=False)
        certs = []
        for item in items:
            try:
                not_after = datetime.strptime(
                    item.get("NotAfter") or "", "%Y-%m-%dT%H:%M:%S"
                ).replace(tzinfo=timezone.utc)
            except ValueError:
                not_after = None
            certs.append({
                "thumbprint": item["Thumbprint"],
                "subject": item.get("Subject") or "",
                "dnsnames": [n["Unicode"] for n in item.get("DnsNameList") or []],
                "not_after": not_after,
            })
        return certs

    def _bind_certificate(self, thumbprint: str, host: str,
                          port: int = 443) -> None:
        # Replaces whatever certificate already sits in the slot.
        slot = _ps_quote(f"IIS:\\SslBindings\\*!{port}!{host}")
        script = (
            f"if (Test-Path {slot}) {{ Remove-Item -Path {slot} }}; "
            f"New-Item -Path {slot} -Thumbprint {_ps_quote(thumbprint)} "
            f"-SSLFlags 1"
        )
        self._srvmgr(script, f"Unable to bind certificate for {host}")

    def select_certificate(self, domain: str) -> tuple:
        """Return (certificate, None) or (None, BindingStatus) for *domain*."""
        certs = self._list_certs()
        if not certs:
            return None, BindingStatus.NO_CERTIFICATE
        if self.cert_policy == "first":
            return certs[0], None

        now = datetime.now(timezone.utc)
        eligible = [
            c for c in certs
            if c["not_after"] is not None and c["not_after"] > now
            and any(host_matches(n, domain) for n in certificate_names(c))
        ]
        if not eligible:
            return None, BindingStatus.NO_MATCHING_CERTIFICATE
        return max(eligible, key=lambda c: c["not_after"]), None

    def ensure_bindings(self, site_name: str, domain: str,
                        current=None) -> str:
        """Add whichever of the http/https bindings for *domain* is missing."""
        if current is None:
            current = self._list_sites().get(site_name, {}).get("bindings", [])
        present = {b["protocol"] for b in current
                   if b["host"].lower() == domain.lower()}

        if {"http", "https"} <= present:
            _info(f"Bindings already present for {domain}")
            return BindingStatus.SKIPPED_EXISTING

        if "http" not in present:
            self._add_binding(site_name, "http", 80, domain)
            _info(f"{_I.LINK}  Added http binding *:80:{domain}")
            self._record("bindings_added", f"{site_name} http/*:80:{domain}")

        if "https" in present:
            return BindingStatus.CONFIGURED

        cert, reason = self.select_certificate(domain)
        if cert is None:
            if reason == BindingStatus.NO_CERTIFICATE:
                _warn(f"No certificate in {CERT_STORE} — {site_name} stays "
                      "HTTP-only")
            else:
                _warn(f"No valid certificate for {domain} in {CERT_STORE} — "
                      f"{site_name} stays HTTP-only")
            return reason

        self._add_binding(site_name, "https", 443, domain)
        self._record("bindings_added", f"{site_name} https/*:443:{domain}")
        self._bind_certificate(cert["thumbprint"], domain)
        self._record("cert_bindings", f"*!443!{domain}={cert['thumbprint']}")
        _info(f"{_I.LOCK}  Added https binding *:443:{domain} "
              f"(certificate {cert['thumbprint']})")
        return BindingStatus.CONFIGURED

    def ensure_site(self, site: SiteDefinition) -> str:
        existing = self._list_sites()
        result = self.results["sites"].setdefault(site.name, {})

        if site.name in existing:
            _info(f"Site already present: {site.name}")
            result["site"] = SiteStatus.ALREADY_EXISTS
            result["bindings"] = None
            if self.reconcile:
                result["bindings"] = self.ensure_bindings(
                    site.name, site.domain, existing[site.name]["bindings"])
            return SiteStatus.ALREADY_EXISTS

        self._ensure_dir(Path(site.path))
        self._create_site(site)
        _info(f"{_I.GLOBE}  Created site {site.name} ({site.path})")
        self._record("sites_created", site.name)
        result["site"] = SiteStatus.CREATED

        # A dry run has not created anything to read back.
        current = ([parse_binding_info("http", f"*:80:{site.domain}")]
                   if self.dry_run else None)
        result["bindings"] = self.ensure_bindings(site.name, site.domain,
                                                  current)
        return SiteStatus.CREATED

    def ensure_sites(self) -> dict:
        for site in self.sites:
            try:
                self.ensure_site(site)
            except IisifyError as exc:
                _error(f"Site {site.name} failed: {exc}")
                self._record("errors", f"site {site.name}: {exc}")
                self.results["sites"].setdefault(site.name, {})["error"] = str(exc)
        return self.results["sites"]

    # ── summary ───────────────────────────────────────────────────────────

    def _print_site_table(self) -> None:
        try:
            sites = self._list_sites()
        except IisifyError as exc:
            _warn(f"Could not list websites: {exc}")
            return
        if not sites:
            _skip("No websites configured")
            return

        rows = [("Name", "State", "Physical path", "Bindings")]
        for name in sorted(sites):
            s = sites[name]
            rows.append((
                name,
                str(s.get("state") or "?"),
                str(s.get("path") or ""),
                ", ".join(format_binding(b) for b in s["bindings"]) or "-",
            ))
        widths = [max(len(r[i]) for r in rows) for i in range(3)]

        print()
        print(f"  {_I.TABLE}  {_C.BOLD}Websites{_C.RESET}")
        for idx, row in enumerate(rows):
            line = "  ".join(cell.ljust(widths[i])
                             for i, cell in enumerate(row[:3]))
            print(f"    {line}  {row[3]}")
            if idx == 0:
                print("    " + "  ".join("─" * w for w in widths) + "  " +
                      "─" * len(row[3]))

    def _print_summary(self) -> None:
        elapsed = time.monotonic() - self._t0
        m, s = divmod(int(elapsed), 60)
        _banner(f"{_I.CHECK}  iisify complete ({m}m {s:02d}s)")

        if "features" not in self.skip:
            counts = {}
            for status in self.results["features"].values():
                counts[status] = counts.get(status, 0) + 1
            parts = [f"{counts[st]} {st}" for st in FeatureStatus.ALL
                     if counts.get(st)]
            feat_str = ", ".join(parts) if parts else "none"
        else:
            feat_str = "skipped"
        _info(f"{STEP_ICONS['features']}  Features:  {feat_str}")

        if "module" not in self.skip:
            mod_str = self.results["module"] or "error"
        else:
            mod_str = "skipped"
        _info(f"{STEP_ICONS['module']}  Module:    {mod_str}")

        if "redirect" not in self.skip:
            rule_str = (f"{self.rule.name}: {self.results['redirect']}"
                        if self.results["redirect"] else "error")
        else:
            rule_str = "skipped"
        _info(f"{STEP_ICONS['redirect']}  Redirect:  {rule_str}")

        if "sites" not in self.skip:
            for name, res in self.results["sites"].items():
                if "error" in res:
                    site_str = f"error ({res['error']})"
                else:
                    site_str = res.get("site", "?")
                    if res.get("bindings"):
                        site_str += f", bindings {res['bindings']}"
                _info(f"{STEP_ICONS['sites']}  {name}: {site_str}")
            self._print_site_table()
        else:
            _info(f"{STEP_ICONS['sites']}  Sites:     skipped")

        if not self.dry_run:
            print()
            _info(f"{_I.STAMP}  Stamp file: {self.stamp.path} "
                  f"({self.stamp.mutations()} change(s))")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="iisify",
        description="Provision IIS features, URL Rewrite, an HTTPS redirect "
                    "and the declared websites on Windows Server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  iisify                           # full run (elevated prompt)
  iisify --dry-run                 # preview without changes
  iisify -q                        # step banners, warnings and errors only
  iisify --skip-features           # assume the IIS role is already present
  iisify --cert-policy match       # only bind a valid certificate for the domain
  iisify --reconcile-bindings      # also repair bindings of existing sites
""",
    )
    for step in STEPS:
        p.add_argument(
            f"--skip-{step}",
            dest=f"skip_{step}",
            action="store_true",
            help=f"skip the {step} step",
        )
    p.add_argument(
        "--cert-policy", choices=CERT_POLICIES, default="first",
        help="certificate selection: first (first certificate in the store, "
             "default) or match (domain + not expired)",
    )
    p.add_argument(
        "--reconcile-bindings", action="store_true",
        help="add missing bindings to sites that already exist",
    )
    p.add_argument(
        "--dry-run", action="store_true",
        help="print changes without executing them",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-command output; show only step banners, "
             "warnings, and errors",
    )
    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if not args.dry_run and not is_admin():
        _error("iisify must run from an elevated (Administrator) prompt "
               "on Windows")
        sys.exit(1)

    skipped = [step for step in STEPS if getattr(args, f"skip_{step}", False)]

    provisioner = Iisify(
        dry_run=args.dry_run,
        skip_steps=skipped,
        quiet=args.quiet,
        cert_policy=args.cert_policy,
        reconcile=args.reconcile_bindings,
    )
    provisioner.run()


if __name__ == "__main__":
    main()
