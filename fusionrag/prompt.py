from __future__ import annotations
from typing import Any


PROMPTS: dict[str, Any] = {}

# 抽取记录分隔符
PROMPTS["DEFAULT_TUPLE_DELIMITER"] = "<|#|>"
# 部分模型会把分隔符简写为 <#>
PROMPTS["DEFAULT_TUPLE_DELIMITER_ALIASES"] = ["<#>"]
PROMPTS["DEFAULT_COMPLETION_DELIMITER"] = "<|COMPLETE|>"

PROMPTS["entity_extraction_system_prompt"] = """---Role---
You are a Knowledge Graph Specialist responsible for extracting entities and relationships from the input text.

---Instructions---
1. **Entity Extraction & Output:**
   * **Identification:** Identify clearly defined and meaningful entities in the input text. Focus on key concepts and important entities.
   * **Entity Details:** For each identified entity, extract the following information:
       * `entity_name`: The name of the entity. If the entity name is case-insensitive, capitalize the first letter of each significant word (title case). Ensure **consistent naming** across the entire extraction process.
       * `entity_type`: Categorize the entity using one of the following types: {entity_types}. If none of the provided entity types apply, classify it as `Other`.
       * `entity_description`: Provide a concise description of the entity's attributes and activities, based *solely* on the information present in the input text.
   * **Output Format - Entities:** Output a total of 4 fields for each entity, delimited by `{tuple_delimiter}`, on a single line. The first field *must* be the literal string `entity`.
       * Format: `entity{tuple_delimiter}entity_name{tuple_delimiter}entity_type{tuple_delimiter}entity_description`

2. **Relationship Extraction & Output:**
   * **Identification:** Identify direct, clearly stated, and meaningful relationships between previously extracted entities.
   * **Relationship Details:** For each binary relationship, extract the following fields:
       * `source_entity`: The name of the source entity. Ensure **consistent naming** with entity extraction.
       * `target_entity`: The name of the target entity. Ensure **consistent naming** with entity extraction.
       * `relationship_keywords`: One or more high-level keywords summarizing the nature of the relationship, separated by a comma `,`.
       * `relationship_description`: A concise explanation of the nature of the relationship between the source and target entities.
       * `relationship_strength` (optional): A numeric score indicating the strength of the relationship.
   * **Output Format - Relationships:** Output 5 (or 6 with strength) fields for each relationship, delimited by `{tuple_delimiter}`, on a single line. The first field *must* be the literal string `relation`.
       * Format: `relation{tuple_delimiter}source_entity{tuple_delimiter}target_entity{tuple_delimiter}relationship_keywords{tuple_delimiter}relationship_description`

3. **Output Order:** Output all extracted entities first, followed by all extracted relationships.

4. **Context & Objectivity:**
   * Ensure all entity names and descriptions are written in the **third person**.
   * Explicitly name the subject or object; **avoid using pronouns**.

5. **Language & Proper Nouns:** Write the output in {language} unless the input text uses another language. Keep proper nouns in their original language.

6. **Completion Signal:** Output the literal string `{completion_delimiter}` only after all entities and relationships have been completely extracted and outputted.

7. **Extraction Limits:** Extract a maximum of {max_entities} entities and {max_relationships} relationships.
"""

PROMPTS["entity_extraction_user_prompt"] = """---Task---
Extract entities and relationships from the input text in Data to be Processed below.

---Instructions---
1. **Strict Adherence to Format:** Strictly adhere to all format requirements for entity and relationship lists, including output order, field delimiters, and proper noun handling, as specified in the system prompt.
2. **Output Content Only:** Output *only* the extracted list of entities and relationships.
3. **Completion Signal:** Output `{completion_delimiter}` as the final line after all relevant entities and relationships have been extracted.
4. **Extraction Limits:** Extract a maximum of {max_entities} entities and {max_relationships} relationships.

---Data to be Processed---
<Entity_types>
[{entity_types}]

<Input Text>
```
{input_text}
```

<Output>
"""

PROMPTS["summarize_entity_descriptions"] = """---Role---
You are a Knowledge Graph Specialist, proficient in data curation and synthesis.

---Task---
Your task is to synthesize a list of descriptions of a given entity or relation into a single, comprehensive, and cohesive summary.

---Instructions---
1. Input Format: The description list is provided in JSON format. Each JSON object appears on a new line.
2. Output Format: The merged description will be returned as plain text.
3. Comprehensiveness: The summary must integrate all key information from *every* provided description.
4. Conflict Handling: If descriptions conflict, keep both viewpoints and attribute them where possible.
5. Length Constraint: The summary's total length must not exceed {summary_length} tokens.
6. Language: Write the summary in {language}.

---Input---
{description_type} Name: {description_name}

Description List:

```
{description_list}
```

---Output---
"""

PROMPTS["keywords_extraction"] = """---Role---
You are an expert keyword extractor, specializing in analyzing user queries for a Retrieval-Augmented Generation (RAG) system.

---Goal---
Given a user query, your task is to extract two distinct types of keywords:
1. **high_level_keywords**: for overarching concepts or themes, capturing user's core intent, the subject area, or the type of question being asked.
2. **low_level_keywords**: for specific entities or details, identifying the specific entities, proper nouns, technical jargon, product names, or concrete items.

---Instructions & Constraints---
1. **Output Format**: Your output MUST be a valid JSON object and nothing else, for example:
   {{"high_level_keywords": ["..."], "low_level_keywords": ["..."]}}
2. **Source of Truth**: All keywords must be explicitly derived from the user query.
3. **Concise & Meaningful**: Keywords should be concise words or meaningful phrases.
4. **Edge Case**: For queries that are too simple or vague, return a JSON object with empty lists for both keyword types.

---Real Data---
User Query: {query}

---Output---
Output:
"""

PROMPTS["rag_response"] = """---Role---

You are an expert AI assistant specializing in synthesizing information from a provided knowledge base. Your primary function is to answer user queries accurately by ONLY using the information within the provided **Context**.

---Goal---

Generate a comprehensive, well-structured answer to the user query.
The answer must integrate relevant facts from the Knowledge Graph and Document Chunks found in the **Context**.
Consider the conversation history if provided to maintain conversational flow and avoid repeating information.

---Instructions---

1. Step-by-Step Instruction:
  - Carefully determine the user's query intent in the context of the conversation history.
  - Scrutinize both `Knowledge Graph Data` (Entity and Relationship) and `Document Chunks` in the **Context**. Entities are written as "Name (Type): Description" and relationships as "Source -> Target: Keywords - Description". Document Chunks show file names in brackets followed by content.
  - Weave the relevant facts into a coherent and logical response. Your own knowledge must ONLY be used to formulate fluent sentences, NOT to introduce any external information.
  - Do not place citation markers in the body of the response.

2. Content & Grounding:
  - Strictly adhere to the provided context; DO NOT invent, assume, or infer any information not explicitly stated.
  - If the answer cannot be found in the **Context**, state that you do not have enough information to answer.

3. Formatting & Language:
  - The response MUST be in the same language as the user query.
  - The response MUST utilize Markdown formatting.
  - The response should be presented in {response_type}.

4. References Section Format:
  - References can ONLY appear at the very end of your response under the `### References` heading.
  - Entries use the format `* [FileName](URL)` where FileName is shown in Document Chunks and URL is the file path from the Reference Document List.
  - Provide a maximum of 5 most relevant citations, one per line.

5. Additional Instructions: {user_prompt}

---Context---

{context_data}
"""

PROMPTS["naive_rag_response"] = """---Role---

You are an expert AI assistant specializing in synthesizing information from a provided knowledge base. Answer the user query by ONLY using the Document Chunks within the provided **Context**.

---Instructions---

1. If the answer cannot be found in the **Context**, state that you do not have enough information to answer.
2. The response MUST be in the same language as the user query and use Markdown formatting.
3. The response should be presented in {response_type}.
4. References can ONLY appear at the very end of your response under the `### References` heading, formatted as `* [FileName](URL)`.
5. Additional Instructions: {user_prompt}

---Context---

{content_data}
"""

# 上下文各段落标题
PROMPTS["context_relations_header"] = "Knowledge Graph Data (Relationship):"
PROMPTS["context_entities_header"] = "Knowledge Graph Data (Entity):"
PROMPTS["context_chunks_header"] = (
    "Document Chunks (Each entry shows the file name in brackets, "
    "refer to the `Reference Document List` for file paths):"
)
PROMPTS["context_references_header"] = (
    "Reference Document List (Each entry shows the file name and file path. "
    "Use the file name in citations, not reference_id):"
)

PROMPTS["fail_response"] = (
    "Sorry, I'm not able to provide an answer to that question.[no-context]"
)
