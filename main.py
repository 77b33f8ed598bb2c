#!/usr/bin/env python3
"""
Request Router - cost, performance and quality aware LLM routing

Runs a demo batch of chat requests through a router built from config.ini
over simulated providers, then prints routing, cache, resilience and ML
statistics.

The router blends each provider's observed success rate and latency with the
request's estimated cost and the model's expected quality, executes the best
candidate behind per-provider circuit breakers, and falls back to ranked
alternatives or cheaper models when a provider fails.
"""

import argparse
import asyncio
import logging
from typing import List, Optional

from core.config import load_config_or_default
from core.data_models import ChatRequest
from core.errors import RouterError, InsufficientTrainingData
from llm_providers import InMemoryUsageSink
from routers import RequestRouter, RouteOptions, create_router

DEMO_PROMPTS = [
    ("chat-small", "What is the difference between supervised and unsupervised learning?"),
    ("chat-small", "Explain RESTful web services in two sentences."),
    ("chat-medium", "Write a Python function to compute the fibonacci sequence iteratively."),
    ("chat-large", "Analyze the trade-offs between microservices and a monolith for a startup."),
    ("chat-small", "Translate 'good morning' into French, German and Spanish."),
    ("chat-medium", "Summarize the main causes of the 2008 financial crisis."),
]


def build_demo_requests(count: int) -> List[ChatRequest]:
    """Cycle through the demo prompts; repeats exercise the cache"""
    requests = []
    for i in range(count):
        model, prompt = DEMO_PROMPTS[i % len(DEMO_PROMPTS)]
        requests.append(ChatRequest.from_dict({
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.2,
        }))
    return requests


async def run_demo(router: RequestRouter, count: int, concurrency: int,
                   preferred_provider: Optional[str] = None) -> None:
    semaphore = asyncio.Semaphore(concurrency)
    options = RouteOptions(preferred_provider=preferred_provider)

    async def run_one(index: int, request: ChatRequest) -> None:
        async with semaphore:
            try:
                response = await router.route(request, user_id="demo-user", options=options)
            except RouterError as e:
                print(f"[{index:03d}] {request.model:<12} FAILED: {e}")
                return
            meta = response.metadata
            source = "cache" if meta.get("from_cache") else meta.get("recovery_strategy", "")
            quality = meta.get("quality_score")
            quality_text = f"{quality:.3f}" if quality is not None else "  -  "
            print(
                f"[{index:03d}] {request.model:<12} -> {response.provider:<10} {response.model:<28} "
                f"cost=${response.usage.cost:.5f} quality={quality_text} ({source})"
            )

    await asyncio.gather(*(run_one(i, r) for i, r in enumerate(build_demo_requests(count), 1)))


def print_stats(router: RequestRouter, usage: InMemoryUsageSink) -> None:
    stats = router.get_stats()

    print("\n=== Final Router Statistics ===")
    print(f"Total Requests: {stats['router']['total_requests']}")
    print(f"Cache Hits: {stats['router']['cache_hits']}")
    print(f"Failed Requests: {stats['router']['failed_requests']}")
    print(f"Total Cost: ${usage.total_cost():.5f}")

    print("\nPerformance Summary:")
    for provider, perf in stats["router"]["performance_summary"].items():
        print(f"  {provider}:")
        print(f"    Total Requests: {perf['total_requests']}")
        print(f"    Success Rate: {perf['success_rate']:.2%}")
        print(f"    Avg Latency: {perf['avg_latency']:.1f}ms")
        print(f"    Avg Cost: ${perf['avg_cost']:.5f}")
        print(f"    Avg Quality: {perf['average_quality']:.3f}")

    print("\nCircuit Breakers:")
    for provider, breaker in stats["resilience"]["circuit_breakers"].items():
        print(f"  {provider}: {breaker['state']} (failures={breaker['failures']})")

    errors = stats["resilience"]["errors"]
    print(f"\nErrors: {errors['total_errors']} {errors['errors_by_type']}")
    print(f"Recovery Strategies: {errors['recovery_strategies']}")

    cache = stats["cache"]
    print(f"\nCache: {cache['total_entries']} entries, hit rate {cache['hit_rate']:.2%}")

    ml = stats["ml"]
    print(f"\nML Models Trained: {ml['trained']} (training size {ml['training_size']})")


async def async_main(args: argparse.Namespace) -> None:
    app_config = load_config_or_default(args.config)
    if args.min_training_examples is not None:
        app_config.ml.min_training_examples = args.min_training_examples

    usage = InMemoryUsageSink()
    router = create_router(app_config, time_scale=args.time_scale, seed=args.seed, usage_sink=usage)

    print("=== Request Router Demo ===\n")
    print(f"Providers: {', '.join(router.registry.provider_ids())}")

    analysis = await router.analyze_costs(build_demo_requests(1)[0])
    print(f"Cheapest provider for chat-small: {analysis.cheapest_provider} (${analysis.estimated_cost:.5f})\n")

    router.start()
    try:
        await run_demo(router, args.requests, args.concurrency, args.preferred_provider)
        if args.train:
            try:
                metrics = await router.train_models()
                print(f"\nTrained models on {metrics['training_size']} examples")
            except InsufficientTrainingData as e:
                print(f"\nSkipped training: {e}")
    finally:
        await router.stop()

    print_stats(router, usage)
    print("\n=== Demo Complete ===")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a demo batch through the request router")
    parser.add_argument("--config", default="config.ini", help="Path to the INI configuration file")
    parser.add_argument("--requests", type=int, default=24, help="Number of demo requests")
    parser.add_argument("--concurrency", type=int, default=4, help="Concurrent requests in flight")
    parser.add_argument("--time-scale", type=float, default=0.01,
                        help="Multiplier applied to simulated provider latency")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for the simulation")
    parser.add_argument("--preferred-provider", default=None, help="Provider to prefer when available")
    parser.add_argument("--train", action="store_true", help="Train the ML models after the batch")
    parser.add_argument("--min-training-examples", type=int, default=None,
                        help="Override the minimum number of training examples")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    asyncio.run(async_main(args))


if __name__ == "__main__":
    main()
