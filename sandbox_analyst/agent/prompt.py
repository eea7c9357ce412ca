# sandbox_analyst/agent/prompt.py
from dataclasses import dataclass


def system_prompt(dataset_path: str, tool_name: str, quota: int) -> str:
    return f"""
You are an advanced Data Analyst & Report Builder working inside an isolated Python sandbox.

You can:
- Run Python code on the CSV file at '{dataset_path}' using the "{tool_name}" tool.
- Optionally build a SQLite database from the CSV (sqlite3, df.to_sql) for SQL-style analysis.

Rules:
1. Your first response MUST be a call to `{tool_name}` that imports pandas as pd, loads '{dataset_path}'
   into a DataFrame named `df` and prints df.head(), df.info() and df.describe(include="all").
2. Always use `print(...)` to show results. Do not rely on implicit printing.
3. The sandbox is persistent for this run: variables and imports survive between tool calls.
   Calls are executed one at a time, in the order you send them.
4. Compute concrete numeric KPIs: totals, averages, rates/percentages, top-N rankings.
   Every major point in the final report must be backed by a number.
5. Create at least {quota} meaningful charts with matplotlib and call plt.show() for each one.
   Prefer a mix: a trend over time (if there is a date column), a distribution, a category comparison.
6. If a call fails, read the error, fix the code and try again.

You are NOT allowed to finish with a natural language answer until at least {quota} charts have been generated.

Final report (only after the charts exist):
- Start with a "Key KPIs" section: bullet points with numbers.
- One subsection per chart, labeled "Chart 1 – <title>", "Chart 2 – <title>", ...: what it shows,
  the main numeric insights, and any link to the external context when relevant.
- If external context from user-provided links is present in the system messages, use its
  definitions and benchmarks and compare your KPIs against them.
""".strip()


def external_context_message(context: str) -> str:
    return "External context from user-provided links (via web research):\n\n" + context


def research_prompt(urls) -> str:
    url_lines = "\n".join(urls)
    return f"""
You are a research assistant helping with a data-analysis report.

The user shared these URLs:
{url_lines}

Using ONLY the research tool, do the following:
- Fetch the most relevant information from these URLs.
- Extract key stats, definitions and contextual points that could help interpret a tabular dataset.
- Produce a concise, structured summary that can be embedded as "external context" in a data report.
- Focus on: business model, important metrics, domain definitions, and any benchmarks mentioned.
Return your answer as markdown paragraphs and bullet points, no code.
""".strip()


CORRECTION_TEMPLATE = (
    "You have not yet generated the required {quota} charts. Please continue the analysis:\n"
    "- Use {tool_name} to compute more metrics if needed\n"
    "- Use {tool_name} again to generate at least {remaining} additional visualizations "
    "with matplotlib and plt.show()\n"
    "Remember to weave in the external context from the system messages where relevant.\n"
    "Do not write a final report until all required charts are created."
)

FALLBACK_NARRATIVE = (
    "The analysis completed, but the model returned a very short response. "
    "Please review the generated charts and logs for details."
)

# Stand-in for an empty draft pushed back into the transcript.
EMPTY_DRAFT = "(partial summary)"


@dataclass(frozen=True)
class QuotaPolicy:
    """
    Minimum number of charts before a narrative is accepted, plus the wording of
    the message that sends the model back to work. The loop decides *when* to
    correct (a numeric comparison); this only decides *what* to say.
    """
    quota: int = 3
    template: str = CORRECTION_TEMPLATE
    tool_name: str = "run_python"

    def remaining(self, produced: int) -> int:
        return max(self.quota - produced, 0)

    def correction(self, remaining: int) -> str:
        return self.template.format(quota=self.quota, remaining=remaining, tool_name=self.tool_name)
