"""Text served by the creator: the example server, its prompt and help."""

SERVER_TEMPLATE = """\
// Example MCP server (ES module, stdio transport)
import { McpServer } from "@modelcontextprotocol/sdk/server/mcp.js";
import { StdioServerTransport } from "@modelcontextprotocol/sdk/server/stdio.js";
import { z } from "zod";

const server = new McpServer({
  name: "ExampleServer",
  version: "1.0.0",
  description: "An example MCP server showing the basic structure",
});

// Secrets come from the "env" block of the server's registration entry.
const API_KEY = process.env.EXAMPLE_API_KEY;
if (!API_KEY) {
  console.warn("EXAMPLE_API_KEY is not set; add it to the server's env block.");
}

// Resource: read-only data addressed by a URI.
server.resource("status", "example://status", async (uri) => ({
  contents: [{ uri: uri.href, text: `Configured: ${Boolean(API_KEY)}` }],
}));

// Tool: an action the model can invoke with validated arguments.
server.tool(
  "echo",
  { message: z.string().describe("Text to echo back") },
  async ({ message }) => {
    try {
      return { content: [{ type: "text", text: `You said: ${message}` }] };
    } catch (error) {
      return { content: [{ type: "text", text: `Error: ${error.message}` }], isError: true };
    }
  }
);

// Prompt: a reusable message template.
server.prompt(
  "summarize",
  { text: z.string() },
  ({ text }) => ({
    messages: [{ role: "user", content: { type: "text", text: `Summarize:\\n\\n${text}` } }],
  })
);

const transport = new StdioServerTransport();
await server.connect(transport);
"""

SYSTEM_PROMPT = """\
# MCP Server Creator

You write and maintain Node.js MCP servers using the tools of this server.

## Creating a server
1. Confirm what the server is for.
2. Write a complete ES module following the template from `getTemplate`:
   imports, server definition, resources, tools with zod schemas, prompts,
   then the stdio transport. Start small; extend it later with
   `updateMcpServer`.
3. Save it with `createMcpServer`; it is registered with the host by default.
4. Run `analyzeServerDependencies`, then `installServerDependencies`.
5. If the server needs secrets, add them to its `env` block with
   `getClaudeConfig` and `updateClaudeConfig`.

## Changing a server
1. `listServers`, then `getServerContent` to see the numbered source.
2. Prefer targeted edits: `updateType="section"` replaces `startLine..endLine`,
   `updateType="add"` inserts after `insertAfterLine` (0 prepends).
   Use `updateType="full"` only for rewrites.
3. Line numbers always refer to the latest `getServerContent` output;
   fetch it again after every edit.

## Debugging a server the host does not show
1. `runServerDirectly` and read the captured stdout and stderr.
2. Look for syntax errors, missing packages, missing environment variables
   and transport setup mistakes.
3. Fix with `updateMcpServer`, check the registration entry, and ask the
   user to restart the host application.

## Code rules
- ES modules only (`import`, never `require`).
- Validate every tool argument with zod and return `isError: true` on failure.
- Never log to stdout; it carries the protocol. Use `console.error`.
"""

HELP_TEXT = """\
MCP Server Creator: tools

Servers
  listServers                 List generated servers.
  getTemplate                 Example server to start from.
  getSdkInfo                  TypeScript MCP SDK documentation.
  createMcpServer             Save a new server (registerWithClaude, overwriteExisting).
  getServerContent            Show a server with line numbers.
  updateMcpServer             Edit a server: full | section | add.

Registration
  getClaudeConfig             Show the host registration document.
  updateClaudeConfig          Replace the registration document (validated JSON).

Dependencies and testing
  analyzeServerDependencies   Find npm packages a server imports.
  installServerDependencies   Install packages (npm, falling back to yarn).
  runServerDirectly           Start a server for a few seconds and capture its output.

Typical flow: getTemplate -> createMcpServer -> analyzeServerDependencies
-> installServerDependencies -> runServerDirectly -> restart the host.
"""

RUN_HINTS = """\
Troubleshooting:
- SyntaxError: fix the reported line with updateMcpServer.
- Cannot find package / ERR_MODULE_NOT_FOUND: run installServerDependencies.
- Missing API keys: add them to the server's env block with updateClaudeConfig.
- A server that keeps running until the timeout without errors is healthy;
  stdio servers wait for a client."""
