from __future__ import annotations

import re

from .adapter import Adapter, ErrorSummary, first_line
from .models import DEFAULT_NAMESPACE, ProjectInfo, ProjectType

# Clojure 1.10+ headers:
#   Syntax error compiling at (REPL:1:1).
#   Execution error (ArithmeticException) at user/eval2 (REPL:1).
_HEADER_RE = re.compile(
    r"^(?P<phase>Syntax error|Execution error)"
    r"(?:\s+\((?P<klass>[\w.$]+)\))?"
    r"(?P<rest>.*?)"
    r"\s+at\s+(?:(?P<where>[^\s(]+)\s+)?\((?P<loc>[^)]*)\)\.?\s*$"
)

# Pre-1.10 style:
#   CompilerException java.lang.RuntimeException: Unable to resolve symbol: x, compiling:(NO_SOURCE_PATH:1:1)
_LEGACY_RE = re.compile(
    r"^(?P<klass>[\w.$]*?(?:Exception|Error))\s+"
    r"(?:(?P<cause>[\w.$]+(?:Exception|Error)):\s*)?"
    r"(?P<desc>.*?)"
    r"(?:,\s*compiling:\((?P<loc>[^)]*)\))?$"
)

# Bare JVM exception line: java.lang.ArithmeticException: Divide by zero
_JAVA_RE = re.compile(
    r"^(?P<klass>(?:[\w$]+\.)+[\w$]*(?:Exception|Error))(?::\s*(?P<desc>.*))?$"
)

# Stack frame with a source position: at user$eval1.invoke (core.clj:12)
_FRAME_RE = re.compile(r"\bat\s+\S+\s+\((?P<loc>[^()\s]+:\d+)\)")

_MIDDLEWARE = '["cider.nrepl/cider-middleware"]'


def _short_class(name: str) -> str:
    return name.rsplit(".", 1)[-1]


class ClojureAdapter(Adapter):
    language_name = "clojure"
    language_ids = ("clojure", "clojurescript", "clj", "cljs", "cljc")
    file_extensions = (".clj", ".cljs", ".cljc", ".edn", ".bb")
    comment_prefix = ";;"

    def __init__(
        self,
        *,
        nrepl_version: str = "1.3.1",
        cider_version: str = "0.52.0",
    ) -> None:
        self.nrepl_version = nrepl_version
        self.cider_version = cider_version

    def parse_error(self, raw: str) -> ErrorSummary | None:
        lines = [line.strip() for line in raw.splitlines() if line.strip()]
        if not lines:
            return None
        head, rest = lines[0], lines[1:]

        match = _HEADER_RE.match(head)
        if match:
            klass = match.group("klass")
            category = _short_class(klass) if klass else (
                f"{match.group('phase')} {match.group('rest').strip()}".strip()
            )
            description = " ".join(rest) if rest else head
            return ErrorSummary(category, description, match.group("loc") or None)

        match = _LEGACY_RE.match(head)
        if match and match.group("desc"):
            cause = match.group("cause")
            category = _short_class(cause or match.group("klass"))
            return ErrorSummary(category, match.group("desc"), match.group("loc"))

        match = _JAVA_RE.match(head)
        if match:
            location = None
            for line in rest:
                frame = _FRAME_RE.search(line)
                if frame:
                    location = frame.group("loc")
                    break
            description = match.group("desc") or first_line("\n".join(rest)) or head
            return ErrorSummary(_short_class(match.group("klass")), description, location)

        return None

    def format_prompt(self, namespace: str | None, code: str) -> str:
        prompt = f"{namespace or DEFAULT_NAMESPACE}=> {code}"
        return prompt if prompt.endswith("\n") else prompt + "\n"

    def jack_in_command(self, project: ProjectInfo, port: int) -> str | None:
        if project.project_type is ProjectType.CLOJURE_CLI:
            aliases = project.aliases or ()
            alias_flag = "".join(f":{alias.name}" for alias in aliases)
            if any(alias.has_main_opts for alias in aliases):
                # The alias starts its own server; only tell it which port
                return f"clojure -M{alias_flag} --port {port}"
            deps = (
                f'{{:deps {{nrepl/nrepl {{:mvn/version "{self.nrepl_version}"}} '
                f'cider/cider-nrepl {{:mvn/version "{self.cider_version}"}}}}}}'
            )
            return (
                f"clojure -Sdeps '{deps}' -M{alias_flag} -m nrepl.cmdline "
                f"--port {port} --middleware '{_MIDDLEWARE}'"
            )

        if project.project_type is ProjectType.BABASHKA:
            return f"bb nrepl-server {port}"

        if project.project_type is ProjectType.LEININGEN:
            return (
                f"lein update-in :plugins conj "
                f"'[cider/cider-nrepl \"{self.cider_version}\"]' "
                f"-- repl :headless :port {port}"
            )

        return None
