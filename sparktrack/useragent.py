import re

# -----------------------------------------------------------------------------
# Bot detection
# -----------------------------------------------------------------------------
BOT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"bot", r"crawler", r"spider", r"scraper",
        r"facebookexternalhit", r"twitterbot", r"linkedinbot",
        r"whatsapp", r"telegram", r"discordbot",
        r"googlebot", r"bingbot", r"slurp", r"duckduckbot",
        r"baiduspider", r"yandexbot", r"sogou", r"exabot",
        r"facebot", r"ia_archiver", r"curl", r"wget",
        r"python", r"java", r"go-http", r"node-fetch",
        r"axios", r"okhttp", r"httpie", r"postman",
        r"insomnia", r"apache", r"nginx", r"monitor",
        r"uptime", r"pingdom", r"newrelic", r"datadog",
        r"semrush", r"ahrefs", r"majestic", r"moz\.com",
    )
]


def is_bot(ua: str | None) -> bool:
    """
    Crawlers, monitoring probes and HTTP client libraries.
    A missing user agent counts as a bot.
    """
    if not ua:
        return True
    return any(p.search(ua) for p in BOT_PATTERNS)


# -----------------------------------------------------------------------------
# Rule helpers
# -----------------------------------------------------------------------------
# A rule is (predicate, label). Label is either a string or a callable taking
# the lowercased user agent and returning the label. First match wins.

def has(*tokens):
    return lambda ua: any(t in ua for t in tokens)


def has_not(token, *excluded):
    return lambda ua: token in ua and not any(e in ua for e in excluded)


def versioned(name, pattern):
    """
    Label "<name> <major>" when pattern captures a version, else "<name>".
    """
    rx = re.compile(pattern)

    def label(ua):
        m = rx.search(ua)
        return f"{name} {m.group(1)}" if m else name
    return label


def run_rules(rules, ua):
    for predicate, label in rules:
        if predicate(ua):
            return label(ua) if callable(label) else label
    return None


# -----------------------------------------------------------------------------
# Operating system
# -----------------------------------------------------------------------------
MAC_VERSION_RE = re.compile(r"mac os x (\d+)[._](\d+)")
IOS_VERSION_RE = re.compile(r"os (\d+)[._](\d+)")
OS_FALLBACK_RE = re.compile(r"([a-z]+)\s*\d+[._]\d+")


def mac_label(ua: str) -> str:
    m = MAC_VERSION_RE.search(ua)
    if m:
        major, minor = int(m.group(1)), int(m.group(2))
        if major >= 13:
            return "macOS Ventura/Sonoma"
        if major >= 12:
            return "macOS Monterey"
        if major >= 11:
            return "macOS Big Sur"
        if major >= 10 and minor >= 15:
            return "macOS Catalina"
        if major >= 10 and minor >= 14:
            return "macOS Mojave"
    return "macOS"


def ios_label(ua: str) -> str:
    m = IOS_VERSION_RE.search(ua)
    if m:
        major = int(m.group(1))
        if major >= 17:
            return "iOS 17+"
        if major >= 14:
            return f"iOS {major}"
    return "iOS"


WINDOWS_RULES = [
    (has("windows nt 10.0", "windows 10"), "Windows 10/11"),
    (has("windows nt 6.3", "windows 8.1"), "Windows 8.1"),
    (has("windows nt 6.2", "windows 8"), "Windows 8"),
    (has("windows nt 6.1", "windows 7"), "Windows 7"),
    (has("windows nt 6.0", "windows vista"), "Windows Vista"),
    (has("windows nt 5.1", "windows xp"), "Windows XP"),
    (has("windows phone"), "Windows Phone"),
]

LINUX_RULES = [
    (has("ubuntu"), "Linux (Ubuntu)"),
    (has("debian"), "Linux (Debian)"),
    (has("fedora"), "Linux (Fedora)"),
    (has("redhat", "rhel"), "Linux (Red Hat)"),
    (has("centos"), "Linux (CentOS)"),
    (has("suse"), "Linux (SUSE)"),
    # Android UAs carry "Linux" too
    (has("android"), "Android"),
]

OS_RULES = [
    (has("windows"), lambda ua: run_rules(WINDOWS_RULES, ua) or "Windows"),
    # iPhone UAs also say "like Mac OS X"
    (has("iphone", "ipad", "ipod"), ios_label),
    (has("mac os x", "macintosh"), mac_label),
    (has("linux"), lambda ua: run_rules(LINUX_RULES, ua) or "Linux"),
    (has("android"), "Android"),
    (has("x11"), "Unix"),
    (has("freebsd"), "FreeBSD"),
    (has("openbsd"), "OpenBSD"),
    (has("netbsd"), "NetBSD"),
    (has("chrome os"), "Chrome OS"),
]


def parse_os(ua: str | None) -> str:
    """
    Human readable OS label, "Unknown" when nothing matches.
    """
    if not ua:
        return "Unknown"
    ua_lower = ua.lower()

    label = run_rules(OS_RULES, ua_lower)
    if label:
        return label

    m = OS_FALLBACK_RE.search(ua_lower)
    if m:
        return m.group(1).capitalize()
    return "Unknown"


# -----------------------------------------------------------------------------
# Browser
# -----------------------------------------------------------------------------
BROWSER_FALLBACK_RE = re.compile(r"([a-z]+)/(\d+)")
BROWSER_FALLBACK_SKIP = {"mozilla", "webkit", "version"}

# Edge, Opera and Samsung Internet all carry the Chrome token, and Chrome
# carries the Safari token, so order matters here.
BROWSER_RULES = [
    (has("edg/"), versioned("Edge", r"edg/(\d+)")),
    (has("opr/", "opera"), versioned("Opera", r"(?:opr|opera)/(\d+)")),
    (has("samsungbrowser"), versioned("Samsung Internet", r"samsungbrowser/(\d+)")),
    (has_not("chrome", "edg", "opr"), versioned("Chrome", r"chrome/(\d+)")),
    (has("firefox"), versioned("Firefox", r"firefox/(\d+)")),
    (has_not("safari", "chrome"), versioned("Safari", r"version/(\d+)")),
    (has("msie", "trident"), versioned("Internet Explorer", r"(?:msie |rv:)(\d+)")),
    (has("brave"), "Brave"),
    (has("vivaldi"), versioned("Vivaldi", r"vivaldi/(\d+)")),
    (has("ucbrowser"), versioned("UC Browser", r"ucbrowser/(\d+)")),
    (lambda ua: "safari" in ua and "mobile" in ua, "Mobile Safari"),
]


def parse_browser(ua: str | None) -> str:
    """
    Browser family with major version where available, e.g. "Chrome 120".
    """
    if not ua:
        return "Unknown"
    ua_lower = ua.lower()

    label = run_rules(BROWSER_RULES, ua_lower)
    if label:
        return label

    m = BROWSER_FALLBACK_RE.search(ua_lower)
    if m and m.group(1) not in BROWSER_FALLBACK_SKIP:
        return m.group(1).capitalize()
    return "Unknown"
