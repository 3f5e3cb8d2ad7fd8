# Gemini client, storage, parsing and errors shared by the API, workers and client
