"""
In-container probe program.

A Node.js script run inside the sandbox image. It loads the module's entry
URL in headless Chromium (puppeteer), drives the scenario battery and
prints one tagged JSON line per observation:

    NETWORK_REQUEST: {"url": ..., "method": ..., "headers": ..., "blocked": ..., "scenario": ...}
    CONSOLE_LOG:     {"type": ..., "text": ..., "scenario": ...}
    MODULE_ERROR:    {"message": ..., "scenario": ...}
    SCENARIO_START:  {"id": ...}
    SCENARIO_END:    {"id": ..., "status": "passed"|"failed", "duration_ms": ..., "error": ...}

The entry URL and scenarios are passed through environment variables and
are never spliced into the program text.
"""

import json
from typing import Dict, List

from ..types import SandboxTestScenario

ENV_ENTRY_URL = "MODGUARD_ENTRY_URL"
ENV_SCENARIOS = "MODGUARD_SCENARIOS"
ENV_ALLOWED_PROTOCOLS = "MODGUARD_ALLOWED_PROTOCOLS"

# Home of the puppeteer install in the official image
PROBE_WORKDIR = "/home/pptruser"

PROBE_SCRIPT = r"""
const puppeteer = require('puppeteer');

const entryUrl = process.env.MODGUARD_ENTRY_URL;
const scenarios = JSON.parse(process.env.MODGUARD_SCENARIOS || '[]');
const allowed = (process.env.MODGUARD_ALLOWED_PROTOCOLS || 'http,https')
  .split(',').map((p) => p.trim() + ':');

let current = null;
const emit = (tag, payload) => {
  try {
    process.stdout.write(tag + ': ' + JSON.stringify(payload) + '\n');
  } catch (e) {
    process.stdout.write('MODULE_ERROR: ' + JSON.stringify({ message: String(e) }) + '\n');
  }
};

const protocolAllowed = (url) => {
  try {
    const protocol = new URL(url).protocol;
    return protocol === 'data:' || protocol === 'blob:' || allowed.includes(protocol);
  } catch (e) {
    return false;
  }
};

const withTimeout = (promise, ms) => Promise.race([
  promise,
  new Promise((_, reject) => setTimeout(() => reject(new Error('scenario timeout after ' + ms + 'ms')), ms)),
]);

const actions = {
  normal_operation: async (page) => {
    await page.goto(entryUrl, { waitUntil: 'networkidle2' });
  },
  error_handling: async (page) => {
    await page.goto(entryUrl, { waitUntil: 'domcontentloaded' });
    await page.evaluate(() => {
      window.dispatchEvent(new ErrorEvent('error', { message: 'modguard injected error' }));
    });
  },
  network_security: async (page) => {
    await page.reload({ waitUntil: 'networkidle2' });
  },
  performance_test: async (page) => {
    await page.goto(entryUrl, { waitUntil: 'load' });
    const metrics = await page.metrics();
    emit('CONSOLE_LOG', { type: 'metrics', text: JSON.stringify(metrics), scenario: current });
  },
};

(async () => {
  const browser = await puppeteer.launch({
    headless: 'new',
    args: ['--no-sandbox', '--disable-dev-shm-usage', '--disable-gpu'],
  });
  const page = await browser.newPage();
  await page.setRequestInterception(true);

  page.on('request', (request) => {
    const blocked = !protocolAllowed(request.url());
    emit('NETWORK_REQUEST', {
      url: request.url(),
      method: request.method(),
      headers: request.headers(),
      blocked,
      scenario: current,
    });
    if (blocked) {
      request.abort();
    } else {
      request.continue();
    }
  });
  page.on('console', (message) => {
    emit('CONSOLE_LOG', { type: message.type(), text: message.text(), scenario: current });
  });
  page.on('pageerror', (error) => {
    emit('MODULE_ERROR', { message: error.message, scenario: current });
  });

  for (const scenario of scenarios) {
    current = scenario.id;
    const started = Date.now();
    emit('SCENARIO_START', { id: scenario.id });
    const action = actions[scenario.id] || actions.normal_operation;
    try {
      await withTimeout(action(page), scenario.timeout);
      emit('SCENARIO_END', { id: scenario.id, status: 'passed', duration_ms: Date.now() - started });
    } catch (e) {
      emit('SCENARIO_END', {
        id: scenario.id, status: 'failed', duration_ms: Date.now() - started, error: String(e),
      });
    }
  }
  current = null;

  await browser.close();
})().catch((e) => {
  emit('MODULE_ERROR', { message: 'probe failed: ' + String(e) });
  process.exit(1);
});
"""


def build_command() -> List[str]:
    """Container command running the probe"""
    return ["node", "-e", PROBE_SCRIPT]


def build_environment(
    entry_url: str,
    scenarios: List[SandboxTestScenario],
    allowed_protocols: List[str],
) -> Dict[str, str]:
    """Environment variables the probe reads its inputs from"""
    return {
        ENV_ENTRY_URL: entry_url,
        ENV_SCENARIOS: json.dumps([
            {"id": s.id, "name": s.name, "type": s.test_type, "timeout": s.timeout}
            for s in scenarios
        ]),
        ENV_ALLOWED_PROTOCOLS: ",".join(allowed_protocols),
    }
