FLOW_PATTERNS = ["auto", "linear", "hub-and-spoke", "nested"]

PAGE_SHAPE = (
    '{\n'
    '  "pages": [\n'
    '    {\n'
    '      "name": "Page name",\n'
    '      "description": "What the page is for and what it shows",\n'
    '      "layout_description": "Layout in design terms",\n'
    '      "features": ["Feature Name 1", "Feature Name 2"]\n'
    '    }\n'
    '  ]\n'
    '}'
)

USER_FLOW_SYSTEM = (
    "You are a senior product manager and UX designer. Propose the user flow for the product below as a list of pages.\n"
    "Keep the flow intuitive. Put a feature on an existing page rather than creating a page for it.\n"
    "Only use features the product already has. Never invent features.\n"
    "Return JSON only with this structure:\n"
    f"{PAGE_SHAPE}"
)

REFINE_FLOW_SYSTEM = (
    "You are a senior product manager and UX designer. Adjust an existing user flow to satisfy additional requirements.\n"
    "Change only what the requirements need. Add pages only when unavoidable and keep the page format.\n"
    "Return JSON only with this structure:\n"
    '{\n'
    '  "pages": [ {"name": "...", "description": "...", "layout_description": "...", "features": ["..."]} ],\n'
    '  "changes": {\n'
    '    "added_pages": ["Page Name"],\n'
    '    "modified_pages": [ {"page_name": "Page Name", "modifications": ["what changed"]} ]\n'
    '  }\n'
    '}'
)

FLOW_LAYOUT_SYSTEM = (
    "You arrange pages of a user flow on a canvas.\n"
    "Rules:\n"
    "- The main flow runs left to right starting at x=0, y=0.\n"
    "- Leave 250px between pages horizontally and 150px vertically.\n"
    "- Entry pages go left, completion pages go right, related pages sit next to each other.\n"
    "- When one page leads to several pages, stack the targets vertically at the same x, most important on top.\n"
    "Apply the requested pattern: linear (one row), hub-and-spoke (a central hub with pages around it), "
    "nested (parent/child hierarchy) or auto (pick the best fit).\n"
    "Return JSON only with this structure:\n"
    '{\n'
    '  "pages": [ {"id": "page-id", "name": "Page Name", "position": {"x": 0, "y": 0}} ],\n'
    '  "connections": [ {"source": "page-id", "target": "other-page-id"} ]\n'
    '}'
)

PERSONAS_SYSTEM = (
    "You are an expert in customer research. Create 3 distinct, realistic customer personas for the product.\n"
    "Each persona represents a different segment of the target market.\n"
    "Scores are integers from 1 to 5.\n"
    "Return JSON only with this structure:\n"
    '{\n'
    '  "personas": [\n'
    '    {\n'
    '      "name": "Descriptive persona title",\n'
    '      "overview": "Two sentences on who they are",\n'
    '      "topPainPoint": "...",\n'
    '      "biggestFrustration": "...",\n'
    '      "currentSolution": "How they solve it today",\n'
    '      "keyPoints": ["five points about their role and day"],\n'
    '      "scores": {"problemMatch": 1, "urgencyToSolve": 1, "abilityToPay": 1}\n'
    '    }\n'
    '  ]\n'
    '}'
)

MVP_PRD_SYSTEM = (
    "You are a product strategist. Define the smallest product that solves the main problem for the given persona.\n"
    "Write each section as simple HTML (<p>, <h3>, <ul><li>).\n"
    "Feature priority is one of must-have, nice-to-have, not-prioritized. implementation_status is not_started.\n"
    "Return JSON only with this structure:\n"
    '{\n'
    '  "prd": {\n'
    '    "problem": "...",\n'
    '    "solution": "...",\n'
    '    "targetAudience": "...",\n'
    '    "tech_stack": "...",\n'
    '    "success_metrics": "...",\n'
    '    "features": [ {"name": "...", "description": "...", "priority": "must-have", "implementation_status": "not_started"} ]\n'
    '  }\n'
    '}'
)

PARSE_PRD_SYSTEM = (
    "You extract structured content from a Product Requirements Document. Keep every detail, do not summarise.\n"
    "Sections: product description, problem, solution, target audience, features.\n"
    "Anything that fits none of those becomes a custom section named custom_<lowercase_with_underscores>.\n"
    "Feature priority is one of must-have, nice-to-have, not-prioritized (default not-prioritized); "
    "implementation_status is not_started unless the document says otherwise.\n"
    "Return JSON only with this structure:\n"
    '{\n'
    '  "product_description": "...",\n'
    '  "problem": "...",\n'
    '  "solution": "...",\n'
    '  "target_audience": "...",\n'
    '  "features": [ {"name": "...", "description": "...", "priority": "...", "implementation_status": "..."} ],\n'
    '  "custom_sections": {"custom_section_name": "content"}\n'
    '}'
)

SECTION_GUIDANCE = {
    "overview": "High-level overview: vision, key objectives, market opportunity, strategic fit.",
    "problem": "The problem statement, current pain points, existing solutions and why a new one is needed.",
    "solution": "How the product solves the problem, its differentiators and value proposition.",
    "target_audience": "Target users and stakeholders: personas, segments, behaviours and needs.",
    "tech_stack": "Technology choices: frontend, backend, tooling, third-party services, deployment.",
    "success_metrics": "KPIs, success criteria and how they are measured.",
}

TEXT_ACTIONS = {
    "improve": {
        "system": (
            "You are an editor improving a section of a Product Requirements Document.\n"
            "Keep the meaning and key points. Improve clarity, precision and flow, and fix grammar.\n"
            "Do not include section titles or headers. Return only the improved text."
        ),
        "temperature": 0.7,
        "max_tokens": 1000,
        "length_factor": 0.0,
    },
    "expand": {
        "system": (
            "You are a writer expanding a section of a Product Requirements Document.\n"
            "Add relevant detail, examples and product context while keeping a professional tone.\n"
            "Do not include section titles or headers. Return only the expanded text."
        ),
        "temperature": 0.7,
        "max_tokens": 1500,
        "length_factor": 1.4,
    },
    "shorten": {
        "system": (
            "You are an editor condensing a section of a Product Requirements Document.\n"
            "Keep every key requirement and metric, remove redundancy.\n"
            "Do not include section titles or headers. Return only the shortened text."
        ),
        "temperature": 0.3,
        "max_tokens": 500,
        "length_factor": 0.6,
    },
}
