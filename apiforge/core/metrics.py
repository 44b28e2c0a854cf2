from collections import Counter


class UsageTracker:
    def __init__(self):
        self.llm_calls = 0
        self.fallback_graphs = 0
        self.json_repairs = 0
        self.strategies = Counter()

    def log_api_call(self, service: str, tokens: int = 0):
        if service == 'llm':
            self.llm_calls += 1

    def log_fallback(self):
        self.fallback_graphs += 1

    def log_repair(self):
        self.json_repairs += 1

    def log_strategy(self, strategy: str):
        self.strategies[strategy] += 1

    def get_stats(self):
        return {
            'llm_api_calls': self.llm_calls,
            'fallback_graphs': self.fallback_graphs,
            'json_repairs': self.json_repairs,
            'materialization_strategies': dict(self.strategies),
            'fallback_rate': self.fallback_graphs / max(1, self.llm_calls)
        }

usage_tracker = UsageTracker()
