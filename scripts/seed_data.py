#!/usr/bin/env python3
"""
Seed script — creates a realistic dataset for exercising the feed pipeline.

Creates:
  • 10 users, each with profile text (→ interest vector)
  • 5 posts per user spread over 4 boards (50 total)
  • Likes, dislikes, views and comments through the engagement buffer
  • Runs the flush, index and hot-comments jobs so TiDB catches up

Run after docker compose up:
  python scripts/seed_data.py --api-url http://localhost:8000 [--signing-key KEY]

All IDs are printed so you can use them in curl commands.
"""
import argparse
import hashlib
import hmac
import json
import random
import time
import urllib.request
import urllib.error
from dataclasses import dataclass
from typing import Optional


BASE_USERS = [
    ("alice_ai", "Alice Chen", "machine learning, embeddings and recommendation systems"),
    ("bob_builder", "Bob Martinez", "backend infrastructure, kubernetes, zero downtime deploys"),
    ("carol_codes", "Carol Singh", "python, fastapi and async programming"),
    ("dave_designs", "Dave Kim", "product design, typography and user research"),
    ("eve_engineer", "Eve Johnson", "distributed databases, TiDB and consistency models"),
    ("frank_feeds", "Frank Williams", "feed ranking, cold start and content discovery"),
    ("grace_graphs", "Grace Li", "graph algorithms and social networks"),
    ("henry_hpc", "Henry Brown", "high performance computing and GPUs"),
    ("iris_infra", "Iris Davis", "observability, tracing and prometheus dashboards"),
    ("jack_ml", "Jack Wilson", "deep learning, transformers and model serving"),
]

BOARDS = ["engineering", "ml", "design", "ops"]

SAMPLE_POSTS = [
    ("Shipping day", "Just shipped a new feature to production. Zero downtime deploys are beautiful."),
    ("Vector search", "Deep dive into vector databases today. Qdrant's HNSW index is impressively fast."),
    ("Redis TIL", "Redis hashes make per-post counters trivial. HINCRBY is atomic, no locks needed."),
    ("Write-behind", "Buffer writes in Redis, flush to SQL every minute. The database finally breathes."),
    ("Cold start", "Building a recommendation system from scratch. The cold-start problem is real."),
    ("Diversity", "Nobody wants five posts from the same author in a row. Diversity caps matter."),
    ("Embeddings", "Tried sentence-transformers for the first time. 384-dim embeddings in 15ms."),
    ("Half-life", "Recency decay with a 7 day half-life feels about right for discussion boards."),
    ("k3s", "k3s is the lightest Kubernetes distribution I have ever run. Boots in 30 seconds."),
    ("Tracing", "OpenTelemetry traces finally connected to Jaeger. The waterfall diagram is so satisfying."),
    ("TiDB", "Distributed SQL with TiDB — horizontal scaling without changing your SQL dialect."),
    ("Good feeds", "The beauty of a well-designed content feed: you never feel like you are searching."),
    ("Moderation", "Content moderation at scale is a harder problem than the ranking model."),
    ("ANN", "Learned about approximate nearest neighbor search today. HNSW beats brute force."),
    ("Retrieval", "Embedding-based retrieval changed everything for recommendation systems."),
    ("A/B tests", "A/B testing your ranking weights: always ship with a control group."),
    ("FastAPI", "FastAPI async endpoints are a joy. Concurrent DB + Redis calls in parallel."),
    ("Dashboards", "Grafana dashboards are the first thing I build for any new service."),
    ("Metrics", "Prometheus metrics: the difference between knowing and guessing in production."),
    ("TTLs", "My Redis memory usage spiked 3x after forgetting to set TTLs on feed caches."),
]

SAMPLE_COMMENTS = [
    "Totally agree!",
    "Do you have a write-up on this?",
    "We hit the same issue last quarter.",
    "Interesting, what was the p99 before?",
    "Bookmarking this.",
]


@dataclass
class ApiClient:
    base_url: str
    signing_key: Optional[str] = None

    def request(self, method: str, path: str, data: Optional[dict] = None, signed: bool = False) -> dict:
        url = f"{self.base_url}{path}"
        body = json.dumps(data).encode() if data is not None else b""
        headers = {"Content-Type": "application/json"}
        if signed and self.signing_key:
            headers["X-Scheduler-Signature"] = hmac.new(
                self.signing_key.encode(), body, hashlib.sha256
            ).hexdigest()
        req = urllib.request.Request(url, data=body or None, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=30) as resp:
                raw = resp.read()
                return json.loads(raw) if raw else {}
        except urllib.error.HTTPError as e:
            print(f"  HTTP {e.code} on {method} {path}: {e.read().decode()}")
            return {}

    def post(self, path: str, data: Optional[dict] = None, signed: bool = False) -> dict:
        return self.request("POST", path, data, signed)

    def get(self, path: str) -> dict:
        return self.request("GET", path)


def wait_for_api(client: ApiClient, retries: int = 15) -> None:
    print(f"Waiting for API at {client.base_url} ...")
    for i in range(retries):
        try:
            result = client.get("/health")
            if result.get("status") == "ok":
                print("  API is ready!\n")
                return
        except OSError:
            pass
        time.sleep(3)
    raise RuntimeError(f"API not reachable at {client.base_url} after {retries} retries")


def engage(client: ApiClient, subject_type: str, subject_id: str, user_id: str, kind: str,
           payload: Optional[dict] = None) -> dict:
    return client.post(
        "/engagement/",
        {
            "subject_type": subject_type,
            "subject_id": subject_id,
            "user_id": user_id,
            "kind": kind,
            "payload": payload,
        },
    )


def main(api_url: str, signing_key: Optional[str]) -> None:
    client = ApiClient(api_url, signing_key)
    wait_for_api(client)

    # ── Create users ─────────────────────────────────────────────────────
    print("Creating users...")
    user_ids: list[str] = []
    for username, display_name, profile_text in BASE_USERS:
        result = client.post(
            "/users/",
            {"username": username, "display_name": display_name, "profile_text": profile_text},
        )
        uid = result.get("user_id", "")
        if uid:
            user_ids.append(uid)
            print(f"  ✓ {username} ({uid})")
        else:
            print(f"  ✗ Failed to create {username}")

    if not user_ids:
        print("No users created — aborting")
        return

    # ── Create posts ──────────────────────────────────────────────────────
    print("\nCreating posts...")
    post_ids: list[str] = []
    pool = SAMPLE_POSTS * 3
    random.shuffle(pool)
    idx = 0
    for user_id in user_ids:
        for _ in range(5):
            title, content = pool[idx % len(pool)]
            idx += 1
            result = client.post(
                "/posts/",
                {"user_id": user_id, "board_id": random.choice(BOARDS), "title": title, "content": content},
            )
            pid = result.get("post_id", "")
            if pid:
                post_ids.append(pid)
    print(f"  ✓ {len(post_ids)} posts created")

    # ── Engagement through the buffer ─────────────────────────────────────
    print("\nAdding engagement...")
    ops = 0
    for post_id in post_ids:
        for user_id in random.sample(user_ids, k=random.randint(0, 6)):
            kind = "like" if random.random() < 0.8 else "vote:dislike"
            engage(client, "post", post_id, user_id, kind)
            ops += 1
        for _ in range(random.randint(1, 20)):
            client.post(f"/engagement/views/{post_id}")
            ops += 1
        for user_id in random.sample(user_ids, k=random.randint(0, 3)):
            engage(client, "post", post_id, user_id, "comment:create",
                   {"content": random.choice(SAMPLE_COMMENTS)})
            ops += 1
    print(f"  ✓ {ops} engagement operations buffered")

    # ── Run scheduler jobs ────────────────────────────────────────────────
    print("\nRunning jobs...")
    indexed = client.post("/jobs/index-posts", signed=True)
    print(f"  ✓ index-posts: {indexed}")
    flushed = client.post("/jobs/flush", {"batch_size": 1000}, signed=True)
    print(f"  ✓ flush: {flushed}")
    refreshed = client.post("/jobs/refresh-interests", {"user_ids": user_ids}, signed=True)
    print(f"  ✓ refresh-interests: {refreshed}")
    hot = client.post("/jobs/hot-comments", signed=True)
    print(f"  ✓ hot-comments: {hot}")

    # ── Print summary ─────────────────────────────────────────────────────
    print("\n" + "=" * 60)
    print("Seed complete! Here are some commands to try:\n")
    u = user_ids[0]
    print(f"# Get the feed for user '{BASE_USERS[0][0]}':")
    print(f"  curl -s '{api_url}/feed/?user_id={u}' | python3 -m json.tool\n")
    print(f"# Same feed, recency only, one board:")
    print(f"  curl -s '{api_url}/feed/?user_id={u}&board=ml&similarity_weight=0"
          f"&engagement_weight=0&recency_weight=1' | python3 -m json.tool\n")
    print(f"# Like a post:")
    print(f"  curl -s -X POST '{api_url}/engagement/' \\")
    print(f"    -H 'Content-Type: application/json' \\")
    print(f"    -d '{{\"subject_type\": \"post\", \"subject_id\": \"{post_ids[0]}\", "
          f"\"user_id\": \"{u}\", \"kind\": \"like\"}}' | python3 -m json.tool\n")
    print(f"# Check Jaeger traces: http://localhost:16686")
    print(f"# Check Prometheus: http://localhost:9090")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the feed pipeline")
    parser.add_argument("--api-url", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--signing-key", default=None, help="Scheduler signing key, if configured")
    args = parser.parse_args()
    main(args.api_url, args.signing_key)
