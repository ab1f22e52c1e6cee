import time
import requests


BASE_URL = "http://localhost:8000"


def post(path: str, data: dict):
    r = requests.post(f"{BASE_URL}{path}", json=data)
    r.raise_for_status()
    return r.json()


def get(path: str, params: dict = None):
    r = requests.get(f"{BASE_URL}{path}", params=params)
    r.raise_for_status()
    return r.json()


def wait_for_stage(run_id: str, stages: set, timeout_s: float = 60.0, interval_s: float = 1.0) -> dict:
    """Poll GET /flow-runs until the run reaches one of the stages or finishes."""
    deadline = time.time() + timeout_s
    run = get(f"/flow-runs/{run_id}")["run"]
    while time.time() < deadline:
        if run["done"] or run["stage"] in stages:
            return run
        time.sleep(interval_s)
        run = get(f"/flow-runs/{run_id}")["run"]
    return run


def main():
    # 1) Create a product
    created = post(
        "/products",
        {
            "user_id": "u1",
            "name": "Flowboard",
            "description": (
                "A workspace where product managers keep the PRD, the user flow and the "
                "delivery board of a product in one place. Primary users: PMs at seed/Series A startups."
            ),
        },
    )
    product_id = created["product"]["id"]
    print("product:", product_id, created["product"]["slug"])

    # 2) Personas, then an MVP PRD for the first one
    personas = post(f"/products/{product_id}/personas", {})["personas"]
    print("personas:", [p["name"] for p in personas])
    assert personas, "No personas generated"

    mvp = post(f"/products/{product_id}/mvp", {"persona_id": personas[0]["id"]})
    print("mvp features:", [f["name"] for f in mvp["features"]])
    assert mvp["prd"]["problem"], "MVP PRD has no problem statement"

    # 3) Generate a flow, keep every page and ask for one refinement
    run = post(f"/products/{product_id}/flow/generate", {"pattern": "auto"})["run"]
    print("suggested:", [p["name"] for p in run["suggested_pages"]])
    assert run["stage"] == "select", f"Unexpected stage {run['stage']}"

    run = post(
        f"/flow-runs/{run['run_id']}/resume",
        {"additional_requirements": "Add a settings page for billing and team members."},
    )["run"]
    run = wait_for_stage(run["run_id"], {"review_refinement"})
    print("refinement:", run.get("refinement", {}).get("changes") if run.get("refinement") else None)

    if not run["done"]:
        run = post(f"/flow-runs/{run['run_id']}/resume", {"accept": True})["run"]
    run = wait_for_stage(run["run_id"], {"applied"})
    print("applied:", run["applied"])
    assert run["done"], "Flow generation did not finish"

    # 4) Edit the canvas and undo the last change
    flow = get(f"/products/{product_id}/flow")["flow"]
    nodes = flow["nodes"]
    assert len(nodes) >= 2, "Generated flow has fewer than two pages"

    first = nodes[0]
    moved = post(f"/products/{product_id}/flow/pages/{first['id']}/move", {"x": 40, "y": 40})
    print("moved:", moved["node"]["position"], "pending:", moved["flow"]["pending_positions"])

    undone = post(f"/products/{product_id}/flow/undo", {})
    print("undo:", undone["changed"], "redo depth:", undone["flow"]["redo_depth"])

    # 5) Track a bug on the board
    bug = post(
        f"/products/{product_id}/kanban/items",
        {"type": "bug", "name": "Canvas jumps after undo", "priority": "must-have"},
    )["item"]
    post(f"/kanban/items/bug/{bug['id']}/move", {"status": "in_progress"})
    board = get(f"/products/{product_id}/kanban", {"types": "bug"})
    in_progress = next(c for c in board["columns"] if c["id"] == "in_progress")
    print("board:", {c["id"]: len(c["items"]) for c in board["columns"]})
    assert any(i["id"] == bug["id"] for i in in_progress["items"]), "Bug is not in progress"

    # 6) Keep a quick note and a product prompt
    note = post(f"/products/{product_id}/notes/quick", {"text": "Undo should keep the canvas still."})["note"]
    print("note:", note["title"])
    prompt = post(
        f"/products/{product_id}/prompts",
        {"name": "Flow canvas", "description": "Build the editor page", "prompt": "Build a canvas with undo and redo."},
    )["prompt"]
    prompts = get(f"/products/{product_id}/prompts")["prompts"]
    assert any(p["id"] == prompt["id"] for p in prompts), "Product prompt missing"

    print("FULL E2E PASS ✅")


if __name__ == "__main__":
    main()
