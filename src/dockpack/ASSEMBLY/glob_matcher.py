# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Glob patterns for assembly include/exclude rules.

Patterns are matched against '/'-separated paths relative to the file set
directory:

    **      any number of path segments (also none, when written as '**/'
            at the start or '/**' at the end)
    *       any characters within one segment
    ?       one character within a segment
    {a,b}   one of the alternatives
    [...]   a character class, '[!...]' negated
"""
import posixpath
import re
from typing import List, Pattern


def glob_to_regex(pattern: str) -> str:
    """
    Translate a glob into an anchored regular expression.

    :param pattern: Glob pattern.
    :return: Regular expression source.
    """
    return "^" + _translate(pattern, top_level=True) + "$"


def _translate(pattern: str, top_level: bool = False) -> str:
    out: List[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if pattern.startswith("**/", i) and (i == 0 or pattern[i - 1] == "/"):
            out.append("(?:.*/)?")
            i += 3
        elif top_level and pattern.startswith("/**", i) and i + 3 == n:
            out.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "{":
            end = pattern.find("}", i)
            if end == -1:
                out.append(re.escape(c))
                i += 1
                continue
            alternatives = pattern[i + 1:end].split(",")
            out.append("(?:" + "|".join(_translate(alt) for alt in alternatives) + ")")
            i = end + 1
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(c))
                i += 1
                continue
            body = pattern[i + 1:end]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = end + 1
        else:
            out.append(re.escape(c))
            i += 1
    return "".join(out)


def normalize(path: str) -> str:
    """Normalize a relative path, resolving '.' and '..' segments."""
    if not path:
        return ""
    normalized = posixpath.normpath(path.replace("\\", "/"))
    return "" if normalized == "." else normalized


class GlobMatcher:
    """
    Matches normalized relative paths against one glob.
    """

    def __init__(self, pattern: str):
        self.pattern = pattern
        self._regex: Pattern = re.compile(glob_to_regex(pattern.lstrip("/")))

    def matches(self, path: str) -> bool:
        return self._regex.match(normalize(path)) is not None

    def __repr__(self) -> str:
        return f"GlobMatcher({self.pattern!r})"


def matches_any(matchers: List[GlobMatcher], path: str) -> bool:
    return any(m.matches(path) for m in matchers)
