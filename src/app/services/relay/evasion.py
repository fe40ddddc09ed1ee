"""Relay Evasion Profile - Fingerprint Patch Catalog

Every fresh browsing context receives ONE pre-load script built from an ordered
catalog of patches, plus a protocol-level user-agent override carrying the
matching client-hint metadata.

Patch catalog (applied in order, each isolated in its own try block):
- webdriver:       navigator.webdriver removed (reads back undefined, not false)
- chrome_runtime:  window.chrome.runtime present
- plugins:         realistic PDF plugin set + matching mimeTypes
- languages:       fixed locale list
- webgl:           UNMASKED_VENDOR/RENDERER (37445/37446) spoofed, other codes pass through
- client_hints:    navigator.platform/appVersion and navigator.userAgentData
                   (brands, getHighEntropyValues) aligned with the user-agent string
- permissions:     'notifications' query mirrors Notification.permission
- hardware:        hardwareConcurrency / deviceMemory
- connection:      navigator.connection values
- window_metrics:  outer window and screen dimensions

The combined script is guarded by a per-catalog-version marker, so registering
it twice on the same document never double-wraps a getter.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .session import BrowsingContext

logger = logging.getLogger(__name__)

CATALOG_VERSION = 4

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

# WebGL debug-renderer-info parameter codes
UNMASKED_VENDOR_WEBGL = 37445
UNMASKED_RENDERER_WEBGL = 37446

_CHROME_VERSION_RE = re.compile(r"Chrome/(\d+)((?:\.\d+){0,3})")


@dataclass(frozen=True)
class EvasionPatch:
    """One named entry of the patch catalog.

    ``script`` is a JavaScript statement list that may read the shared ``cfg``
    object built by EvasionProfile.
    """

    name: str
    script: str


@dataclass(frozen=True)
class ClientHints:
    """Client-hint metadata derived from a user-agent string."""

    brands: tuple[tuple[str, str], ...]
    full_version_list: tuple[tuple[str, str], ...]
    full_version: str
    platform: str
    platform_version: str
    architecture: str
    bitness: str
    model: str = ""
    mobile: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "brands": [{"brand": b, "version": v} for b, v in self.brands],
            "fullVersionList": [{"brand": b, "version": v} for b, v in self.full_version_list],
            "fullVersion": self.full_version,
            "platform": self.platform,
            "platformVersion": self.platform_version,
            "architecture": self.architecture,
            "bitness": self.bitness,
            "model": self.model,
            "mobile": self.mobile,
        }


def _platform_for(user_agent: str) -> tuple[str, str, str]:
    """(client-hint platform, navigator.platform, platform version) for a UA string."""
    if "Windows" in user_agent:
        return "Windows", "Win32", "10.0.0"
    if "Macintosh" in user_agent or "Mac OS X" in user_agent:
        return "macOS", "MacIntel", "14.4.1"
    if "CrOS" in user_agent:
        return "Chrome OS", "Linux x86_64", "15699.85.0"
    return "Linux", "Linux x86_64", "6.5.0"


def client_hints_for(user_agent: str) -> ClientHints | None:
    """
    Derive client-hint metadata consistent with a Chrome user-agent string.

    The brand versions are taken from the ``Chrome/<major>`` token, so the
    Sec-CH-UA headers always agree with the User-Agent header.

    Returns:
        ClientHints, or None for non-Chromium user agents (Firefox/Safari send none)
    """
    match = _CHROME_VERSION_RE.search(user_agent)
    if match is None or "Firefox/" in user_agent:
        return None

    major = match.group(1)
    full_version = major + (match.group(2) or "")
    # Reduced UA strings only carry "<major>.0.0.0"
    if full_version.count(".") < 3:
        full_version = f"{major}.0.0.0"

    platform, _, platform_version = _platform_for(user_agent)
    return ClientHints(
        brands=(("Chromium", major), ("Google Chrome", major), ("Not-A.Brand", "99")),
        full_version_list=(
            ("Chromium", full_version),
            ("Google Chrome", full_version),
            ("Not-A.Brand", "99.0.0.0"),
        ),
        full_version=full_version,
        platform=platform,
        platform_version=platform_version,
        architecture="arm" if "arm64" in user_agent.lower() else "x86",
        bitness="64",
        mobile="Mobile" in user_agent,
    )


# =============================================================================
# PATCH CATALOG
# =============================================================================
_WEBDRIVER = EvasionPatch(
    name="webdriver",
    script="""
const proto = Object.getPrototypeOf(navigator);
if (Object.prototype.hasOwnProperty.call(proto, 'webdriver')) {
  delete proto.webdriver;
}
if ('webdriver' in navigator) {
  delete navigator.webdriver;
}
""",
)

_CHROME_RUNTIME = EvasionPatch(
    name="chrome_runtime",
    script="""
if (!window.chrome) {
  Object.defineProperty(window, 'chrome', { value: {}, writable: true, configurable: true });
}
if (!window.chrome.runtime) {
  window.chrome.runtime = {};
}
""",
)

_PLUGINS = EvasionPatch(
    name="plugins",
    script="""
if (navigator.plugins && navigator.plugins.length === 0) {
  const mimeTypes = [
    { type: 'application/pdf', suffixes: 'pdf', description: 'Portable Document Format' },
    { type: 'text/pdf', suffixes: 'pdf', description: 'Portable Document Format' },
  ];
  const plugins = cfg.pluginNames.map((name) => {
    const plugin = { name, filename: 'internal-pdf-viewer', description: 'Portable Document Format', length: mimeTypes.length };
    mimeTypes.forEach((mime, i) => { plugin[i] = Object.assign({ enabledPlugin: plugin }, mime); });
    plugin.item = (i) => plugin[i] || null;
    plugin.namedItem = (type) => mimeTypes.find((m) => m.type === type) || null;
    return plugin;
  });
  const asArray = (items, key) => {
    const list = items.slice();
    list.item = (i) => list[i] || null;
    list.namedItem = (name) => list.find((entry) => entry[key] === name) || null;
    list.refresh = () => {};
    return Object.freeze(list);
  };
  const pluginArray = asArray(plugins, 'name');
  const mimeArray = asArray(mimeTypes.map((m) => Object.assign({ enabledPlugin: plugins[0] }, m)), 'type');
  Object.defineProperty(Navigator.prototype, 'plugins', { get: () => pluginArray, configurable: true });
  Object.defineProperty(Navigator.prototype, 'mimeTypes', { get: () => mimeArray, configurable: true });
}
""",
)

_LANGUAGES = EvasionPatch(
    name="languages",
    script="""
const languages = Object.freeze(cfg.languages.slice());
Object.defineProperty(Navigator.prototype, 'languages', { get: () => languages, configurable: true });
Object.defineProperty(Navigator.prototype, 'language', { get: () => languages[0], configurable: true });
""",
)

_WEBGL = EvasionPatch(
    name="webgl",
    script="""
for (const ctor of [window.WebGLRenderingContext, window.WebGL2RenderingContext]) {
  if (!ctor) continue;
  const original = ctor.prototype.getParameter;
  ctor.prototype.getParameter = function getParameter(parameter) {
    if (parameter === 37445) return cfg.webglVendor;
    if (parameter === 37446) return cfg.webglRenderer;
    return Reflect.apply(original, this, arguments);
  };
}
""",
)

_CLIENT_HINTS = EvasionPatch(
    name="client_hints",
    script="""
Object.defineProperty(Navigator.prototype, 'platform', { get: () => cfg.platform, configurable: true });
const appVersion = cfg.userAgent.replace(/^Mozilla\\//, '');
Object.defineProperty(Navigator.prototype, 'appVersion', { get: () => appVersion, configurable: true });
if (cfg.clientHints && window.NavigatorUAData) {
  const hints = cfg.clientHints;
  const brands = Object.freeze(hints.brands.map((b) => Object.freeze({ brand: b.brand, version: b.version })));
  const fullVersionList = Object.freeze(hints.fullVersionList.map((b) => Object.freeze({ brand: b.brand, version: b.version })));
  const lowEntropy = () => ({ brands: brands.slice(), mobile: hints.mobile, platform: hints.platform });
  const highEntropy = {
    architecture: hints.architecture,
    bitness: hints.bitness,
    model: hints.model,
    platformVersion: hints.platformVersion,
    fullVersionList,
    uaFullVersion: hints.fullVersion,
    wow64: false,
  };
  const uaProto = NavigatorUAData.prototype;
  Object.defineProperty(uaProto, 'brands', { get: () => brands, configurable: true });
  Object.defineProperty(uaProto, 'mobile', { get: () => hints.mobile, configurable: true });
  Object.defineProperty(uaProto, 'platform', { get: () => hints.platform, configurable: true });
  uaProto.getHighEntropyValues = function getHighEntropyValues(keys) {
    const result = lowEntropy();
    for (const key of keys || []) {
      if (Object.prototype.hasOwnProperty.call(highEntropy, key)) result[key] = highEntropy[key];
    }
    return Promise.resolve(result);
  };
  uaProto.toJSON = function toJSON() { return lowEntropy(); };
}
""",
)

_PERMISSIONS = EvasionPatch(
    name="permissions",
    script="""
if (window.Permissions && Permissions.prototype.query && typeof Notification !== 'undefined') {
  const originalQuery = Permissions.prototype.query;
  Permissions.prototype.query = function query(parameters) {
    if (parameters && parameters.name === 'notifications') {
      const current = Notification.permission === 'default' ? 'prompt' : Notification.permission;
      return Promise.resolve({ name: 'notifications', state: current, onchange: null });
    }
    return Reflect.apply(originalQuery, this, arguments);
  };
}
""",
)

_HARDWARE = EvasionPatch(
    name="hardware",
    script="""
Object.defineProperty(Navigator.prototype, 'hardwareConcurrency', { get: () => cfg.hardwareConcurrency, configurable: true });
Object.defineProperty(Navigator.prototype, 'deviceMemory', { get: () => cfg.deviceMemory, configurable: true });
""",
)

_CONNECTION = EvasionPatch(
    name="connection",
    script="""
if (navigator.connection && window.NetworkInformation) {
  for (const [key, value] of Object.entries(cfg.connection)) {
    Object.defineProperty(NetworkInformation.prototype, key, { get: () => value, configurable: true });
  }
}
""",
)

_WINDOW_METRICS = EvasionPatch(
    name="window_metrics",
    script="""
const screenValues = {
  width: cfg.screen.width,
  height: cfg.screen.height,
  availWidth: cfg.screen.width,
  availHeight: cfg.screen.availHeight,
  colorDepth: 24,
  pixelDepth: 24,
};
for (const [key, value] of Object.entries(screenValues)) {
  Object.defineProperty(Screen.prototype, key, { get: () => value, configurable: true });
}
Object.defineProperty(window, 'outerWidth', { get: () => cfg.screen.width, configurable: true });
Object.defineProperty(window, 'outerHeight', { get: () => cfg.screen.availHeight, configurable: true });
""",
)

DEFAULT_PATCHES: tuple[EvasionPatch, ...] = (
    _WEBDRIVER,
    _CHROME_RUNTIME,
    _PLUGINS,
    _LANGUAGES,
    _WEBGL,
    _CLIENT_HINTS,
    _PERMISSIONS,
    _HARDWARE,
    _CONNECTION,
    _WINDOW_METRICS,
)


def _indent(script: str, prefix: str = "    ") -> str:
    return "\n".join(f"{prefix}{line}" if line else line for line in script.strip().splitlines())


@dataclass(frozen=True)
class EvasionProfile:
    """
    Desktop Chrome identity plus the patch catalog that enforces it.

    The profile is immutable and shared by every fetch; the per-request input
    is only the effective user-agent string.
    """

    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = "en-US,en;q=0.9"
    languages: tuple[str, ...] = ("en-US", "en")
    webgl_vendor: str = "Google Inc. (Intel)"
    webgl_renderer: str = "ANGLE (Intel, Intel(R) UHD Graphics 630 (0x00003E9B) Direct3D11 vs_5_0 ps_5_0, D3D11)"
    viewport_width: int = 1920
    viewport_height: int = 1080
    taskbar_height: int = 40
    hardware_concurrency: int = 8
    device_memory: int = 8
    connection: dict[str, Any] = field(
        default_factory=lambda: {"effectiveType": "4g", "rtt": 50, "downlink": 10, "saveData": False}
    )
    plugin_names: tuple[str, ...] = (
        "PDF Viewer",
        "Chrome PDF Viewer",
        "Chromium PDF Viewer",
        "Microsoft Edge PDF Viewer",
        "WebKit built-in PDF",
    )
    patches: tuple[EvasionPatch, ...] = DEFAULT_PATCHES

    @property
    def marker(self) -> str:
        return f"__relay_evasion_v{CATALOG_VERSION}"

    @property
    def patch_names(self) -> list[str]:
        return [patch.name for patch in self.patches]

    def navigator_platform(self, user_agent: str) -> str:
        return _platform_for(user_agent)[1]

    def client_hints(self, user_agent: str | None = None) -> ClientHints | None:
        return client_hints_for(user_agent or self.user_agent)

    def script_config(self, user_agent: str) -> dict[str, Any]:
        """Values the patch scripts read through ``cfg``."""
        hints = self.client_hints(user_agent)
        return {
            "userAgent": user_agent,
            "platform": self.navigator_platform(user_agent),
            "languages": list(self.languages),
            "webglVendor": self.webgl_vendor,
            "webglRenderer": self.webgl_renderer,
            "hardwareConcurrency": self.hardware_concurrency,
            "deviceMemory": self.device_memory,
            "connection": dict(self.connection),
            "pluginNames": list(self.plugin_names),
            "screen": {
                "width": self.viewport_width,
                "height": self.viewport_height,
                "availHeight": self.viewport_height - self.taskbar_height,
            },
            "clientHints": hints.to_dict() if hints else None,
        }

    def build_script(self, user_agent: str | None = None) -> str:
        """
        Assemble the whole catalog into a single pre-load script.

        Args:
            user_agent: Effective user agent for this context (defaults to the profile's)

        Returns:
            JavaScript source suitable for Page.addScriptToEvaluateOnNewDocument
        """
        effective_ua = user_agent or self.user_agent
        config = json.dumps(self.script_config(effective_ua), separators=(",", ":"))
        marker = json.dumps(self.marker)

        blocks = []
        for patch in self.patches:
            blocks.append(f"  // {patch.name}\n  try {{\n{_indent(patch.script)}\n  }} catch (e) {{}}")

        return (
            "(() => {\n"
            f"  const marker = Symbol.for({marker});\n"
            "  if (window[marker]) return;\n"
            "  Object.defineProperty(window, marker, { value: true, enumerable: false });\n"
            f"  const cfg = {config};\n" + "\n".join(blocks) + "\n})();"
        )

    async def apply(self, context: "BrowsingContext", user_agent: str | None = None) -> None:
        """
        Install the catalog on a fresh context before its first navigation.

        Args:
            context: Browsing context that has not navigated yet
            user_agent: Effective user agent for this context
        """
        await context.add_init_script(self.build_script(user_agent))
        await context.set_viewport(self.viewport_width, self.viewport_height)
        logger.debug(f"Evasion profile v{CATALOG_VERSION} applied ({len(self.patches)} patches)")
