"""
Parley Chat Prompts - Fixed instruction and tool-loop prompt builders

Contains:
- SYSTEM_INSTRUCTION: Response conventions (chart and map embedding syntax)
- MODEL_ACKNOWLEDGEMENT: Model turn that follows the instruction
- TOOL_CALL_PREFIX / GIVE_UP_MARKER: Directive markers parsed from model output
- build_tool_prompt(): First tool-loop turn (tools context + user message)
- build_tool_results_prompt(): Ask for a final answer from tool results
- build_correction_prompt(): Ask the model to repair a failed tool call
"""

import json
from typing import Any, Dict, List

TOOL_CALL_PREFIX = "TOOL_CALL"
GIVE_UP_MARKER = "ERROR_UNABLE_TO_FIX"


SYSTEM_INSTRUCTION = """You are a helpful AI assistant with the ability to display interactive data visualizations and maps directly in the chat interface.

IMPORTANT: This chat interface has built-in chart and map rendering capabilities. When users ask for charts, graphs, data visualizations, or maps, you MUST use the special syntax below. DO NOT suggest Python code, matplotlib, or external tools - the visualizations will render directly in the interface.

**HOW TO CREATE CHARTS:**

Use markdown code blocks with the syntax ```chart:TYPE followed by JSON data:

```chart:line
{
  "title": "Chart Title",
  "data": [{"x": "Label1", "y": 100}, {"x": "Label2", "y": 200}],
  "xKey": "x",
  "yKey": "y"
}
```

**AVAILABLE CHART TYPES:**
- `chart:line` - Line chart (trends over time, continuous data)
- `chart:bar` - Bar chart (comparisons between categories)
- `chart:pie` - Pie chart (proportions and percentages)
- `chart:area` - Area chart (cumulative data, filled trends)

**REQUIRED JSON FIELDS:**
- `data`: Array of objects with your data points
- `xKey`: Property name for x-axis (e.g., "month", "category", "name")
- `yKey`: Property name for y-axis (e.g., "sales", "value", "count")
- `title`: (optional) Chart title

**EXAMPLE:**

```chart:bar
{
  "title": "Monthly Sales",
  "data": [
    {"month": "Jan", "sales": 1200},
    {"month": "Feb", "sales": 1900},
    {"month": "Mar", "sales": 1600}
  ],
  "xKey": "month",
  "yKey": "sales"
}
```

**CHART RULES:**
1. ALWAYS use chart syntax when users ask for graphs, charts, or visualizations
2. NEVER suggest Python code, matplotlib, or external visualization tools
3. The JSON must be valid - use double quotes for all strings
4. Keep data arrays concise (5-15 data points ideal)
5. Choose the right chart type: line (trends), bar (comparisons), pie (proportions)

**HOW TO CREATE MAPS:**

Use markdown code blocks with the syntax ```map followed by JSON data:

```map
{
  "title": "Japan Travel Itinerary",
  "center": [35.6762, 139.6503],
  "zoom": 6,
  "markers": [
    {"name": "Tokyo", "lat": 35.6762, "lng": 139.6503, "description": "Capital city"},
    {"name": "Kyoto", "lat": 35.0116, "lng": 135.7681, "description": "Historic city with temples"}
  ]
}
```

**REQUIRED JSON FIELDS:**
- `center`: Array with [latitude, longitude] for map center
- `markers`: Array of marker objects (at least one), each with `name`, `lat` (-90 to 90), `lng` (-180 to 180) and optional `description`
- `zoom`: Number (optional, default: 10, range: 1-18)
- `title`: String (optional) Map title

**MAP RULES:**
1. ALWAYS use map syntax when users ask for maps, locations, travel routes, or geographic visualizations
2. NEVER suggest external map services or tools - maps render directly in the interface
3. The JSON must be valid - use double quotes for all strings
4. Use appropriate zoom levels: 1-5 (country/continent), 6-10 (region/city), 11-15 (city/neighborhood), 16-18 (street level)
5. When users mention places without coordinates, use well-known approximate coordinates

Remember: Both charts and maps render directly and interactively in this interface."""


MODEL_ACKNOWLEDGEMENT = (
    "Understood! I will create interactive charts using the chart syntax you provided. "
    "Whenever users ask for visualizations, I will use the special markdown code blocks with "
    "chart:line, chart:bar, chart:pie, or chart:area followed by properly formatted JSON data. "
    "I will not suggest Python code or external tools. The charts will render directly in the interface."
)


def build_tool_prompt(tools_context: str, message: str) -> str:
    """First tool-loop turn: enumerate tools and explain the directive format."""
    return f"""{tools_context}

When a user asks a question:
1. If it can be answered using MCP tools, call the appropriate tool
2. If it's a general question, answer directly
3. Always be helpful and provide clear explanations

User message: "{message}"

Respond with either:
- A direct answer if no MCP tools are needed
- A tool call in the format: {TOOL_CALL_PREFIX}:toolName:{{"param1":"value1","param2":"value2"}}
- If you need to call multiple tools, use multiple {TOOL_CALL_PREFIX} lines"""


def build_tool_results_prompt(message: str, results: List[str]) -> str:
    """Ask for a natural-language answer built from labeled tool results."""
    context = "\n\n".join(results)
    return f"""User asked: "{message}"

I called the following tools and got these results:
{context}

Please provide a helpful response based on these results."""


def build_correction_prompt(
    tools_context: str,
    message: str,
    tool_name: str,
    arguments: Dict[str, Any],
    error: str,
) -> str:
    """Ask the model to emit a corrected directive, or give up explicitly."""
    return f"""{tools_context}

The user asked: "{message}"

I tried to call the tool "{tool_name}" with these arguments:
{json.dumps(arguments, indent=2)}

But it failed with this error: "{error}"

Please analyze this error and provide a CORRECTED tool call with fixed arguments.
- Read the error message carefully to understand what's wrong
- Check available operators, attributes, and formats from the MCP tools documentation above
- Fix any invalid operators, attributes, or data formats
- Provide the corrected arguments in the same {TOOL_CALL_PREFIX} format

If you believe the error cannot be fixed with the available information, respond with {GIVE_UP_MARKER} and explain why.

CORRECTED {TOOL_CALL_PREFIX} format:
{TOOL_CALL_PREFIX}:toolName:{{"corrected":"arguments"}}"""
