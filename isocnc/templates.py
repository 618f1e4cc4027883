"""Named-placeholder code templates compiled to positional format strings."""

import re


def compile_template(template: str, value_table: dict[str, int]) -> str:
    """Rewrite ``{name`` placeholders into ``{index`` placeholders.

    Any format spec after the name is kept, so ``{x:.4f}`` with ``x -> 0``
    becomes ``{0:.4f}``. Names missing from the table are left untouched.
    """
    if not value_table:
        return template
    names = sorted(value_table, key=len, reverse=True)
    pattern = re.compile(r"\{(" + "|".join(re.escape(n) for n in names) + r")(?=[:!}])")
    return pattern.sub(lambda m: "{" + str(value_table[m.group(1)]), template)


class CodeTemplate:
    """A value table bound once and used to compile several templates."""

    def __init__(self, value_table: dict[str, int]):
        self.value_table = dict(value_table)

    def compile(self, template: str) -> str:
        return compile_template(template, self.value_table)
