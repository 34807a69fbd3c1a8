import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from classjudge.config import PROBE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LanguageProfile:
    """How to compile (optionally) and run one language.

    Command templates are expanded with ``{src}`` (source file), ``{exe}``
    (compiled artifact), ``{dir}`` (scratch directory) and ``{name}`` (base
    filename without extension).
    """

    name: str
    display_name: str
    extension: str
    run_command: Tuple[str, ...]
    probe_commands: Tuple[Tuple[str, ...], ...]
    install_instructions: str
    timeout_ms: int = 5000
    compile_command: Optional[Tuple[str, ...]] = None
    default_filename: str = "main"
    # Regex whose first group names the file the compiler insists on (Java)
    filename_pattern: Optional[str] = None
    # Runtime tolerates address-space and process-count ceilings
    constrained: bool = True

    @property
    def compiled(self) -> bool:
        return self.compile_command is not None


# Language configurations
LANGUAGES: Dict[str, LanguageProfile] = {
    "javascript": LanguageProfile(
        name="javascript",
        display_name="JavaScript",
        extension=".js",
        run_command=("node", "{src}"),
        probe_commands=(("node", "--version"),),
        install_instructions="Node.js is required. Download from https://nodejs.org/",
        constrained=False,
    ),
    "python": LanguageProfile(
        name="python",
        display_name="Python",
        extension=".py",
        run_command=("python3", "{src}"),
        probe_commands=(("python3", "--version"),),
        install_instructions="Python is required. Download from https://python.org/",
    ),
    "cpp": LanguageProfile(
        name="cpp",
        display_name="C++",
        extension=".cpp",
        compile_command=("g++", "-O2", "-o", "{exe}", "{src}"),
        run_command=("{exe}",),
        probe_commands=(("g++", "--version"),),
        install_instructions="GCC/G++ compiler is required. Install build-essential on Linux.",
        timeout_ms=10000,
    ),
    "c": LanguageProfile(
        name="c",
        display_name="C",
        extension=".c",
        compile_command=("gcc", "-O2", "-o", "{exe}", "{src}"),
        run_command=("{exe}",),
        probe_commands=(("gcc", "--version"),),
        install_instructions="GCC compiler is required. Install build-essential on Linux.",
        timeout_ms=10000,
    ),
    "java": LanguageProfile(
        name="java",
        display_name="Java",
        extension=".java",
        compile_command=("javac", "-d", "{dir}", "{src}"),
        run_command=("java", "-cp", "{dir}", "{name}"),
        probe_commands=(("javac", "-version"), ("java", "-version")),
        install_instructions="Java JDK is required. Download from https://adoptium.net/",
        timeout_ms=10000,
        default_filename="Main",
        filename_pattern=r"public\s+(?:final\s+)?class\s+([A-Za-z_][A-Za-z0-9_]*)",
        constrained=False,
    ),
    "php": LanguageProfile(
        name="php",
        display_name="PHP",
        extension=".php",
        run_command=("php", "{src}"),
        probe_commands=(("php", "--version"),),
        install_instructions="PHP is required. Download from https://php.net/",
    ),
    "ruby": LanguageProfile(
        name="ruby",
        display_name="Ruby",
        extension=".rb",
        run_command=("ruby", "{src}"),
        probe_commands=(("ruby", "--version"),),
        install_instructions="Ruby is required. Download from https://ruby-lang.org/",
    ),
    "go": LanguageProfile(
        name="go",
        display_name="Go",
        extension=".go",
        run_command=("go", "run", "{src}"),
        probe_commands=(("go", "version"),),
        install_instructions="Go is required. Download from https://golang.org/",
        timeout_ms=10000,
        constrained=False,
    ),
}

TEMPLATES = {
    "javascript": 'console.log("Hello, World!");',
    "python": 'print("Hello, World!")',
    "cpp": '#include <iostream>\n\nint main() {\n    std::cout << "Hello, World!" << std::endl;\n    return 0;\n}',
    "c": '#include <stdio.h>\n\nint main() {\n    printf("Hello, World!\\n");\n    return 0;\n}',
    "java": 'public class Main {\n    public static void main(String[] args) {\n        System.out.println("Hello, World!");\n    }\n}',
    "php": '<?php\necho "Hello, World!";\n?>',
    "ruby": 'puts "Hello, World!"',
    "go": 'package main\n\nimport "fmt"\n\nfunc main() {\n    fmt.Println("Hello, World!")\n}',
}

DEFAULT_TEMPLATE = "// Start coding here"


def resolve_filename(profile: LanguageProfile, code: str, filename: Optional[str] = None) -> str:
    """Pick the base filename for the source file."""
    if profile.filename_pattern:
        match = re.search(profile.filename_pattern, code)
        if match:
            return match.group(1)
    return filename or profile.default_filename


async def _probe(command: Tuple[str, ...]) -> bool:
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return False
    try:
        await asyncio.wait_for(process.wait(), timeout=PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return False
    return process.returncode == 0


class LanguageRegistry:
    """Profile lookup plus a per-process cache of which runtimes exist locally."""

    def __init__(self, profiles: Optional[Iterable[LanguageProfile]] = None,
                 availability: Optional[Dict[str, bool]] = None):
        profiles = LANGUAGES.values() if profiles is None else profiles
        self.profiles: Dict[str, LanguageProfile] = {p.name: p for p in profiles}
        # keyed by executable name (node, g++, javac, ...)
        self._tools: Dict[str, bool] = {}
        self._availability: Dict[str, bool] = dict(availability or {})
        self._probed = availability is not None
        self._probe_lock = asyncio.Lock()

    def get(self, language: str) -> Optional[LanguageProfile]:
        if not language:
            return None
        return self.profiles.get(language.lower())

    def names(self) -> List[str]:
        return list(self.profiles)

    async def probe(self):
        """Run every profile's version command and cache the outcome."""
        for profile in self.profiles.values():
            ok = True
            for command in profile.probe_commands:
                tool = command[0]
                if tool not in self._tools:
                    self._tools[tool] = await _probe(command)
                    if not self._tools[tool]:
                        logger.warning(f"[Languages] {tool} not available")
                ok = ok and self._tools[tool]
            self._availability[profile.name] = ok
        self._probed = True
        available = [name for name, ok in self._availability.items() if ok]
        logger.info(f"[Languages] Available: {', '.join(available) or 'none'}")

    async def ensure_probed(self):
        if self._probed:
            return
        async with self._probe_lock:
            if not self._probed:
                await self.probe()

    def is_available(self, language: str) -> bool:
        profile = self.get(language)
        return profile is not None and self._availability.get(profile.name, False)

    def status(self) -> Dict[str, bool]:
        return dict(self._tools)

    def describe(self) -> List[dict]:
        """Listing for clients: everything is supported, not everything is installed."""
        result = []
        for profile in self.profiles.values():
            local = self._availability.get(profile.name, False)
            result.append({
                "name": profile.display_name,
                "value": profile.name,
                "extension": profile.extension,
                "supported": True,
                "available": local,
                "compiled": profile.compiled,
                "timeout_ms": profile.timeout_ms,
                "install_instructions": None if local else profile.install_instructions,
            })
        return result
